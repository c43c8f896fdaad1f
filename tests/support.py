"""Fragment variants and record classes shared by the test suite.

Variants are mapped once per process (polymorphic identities are global), so
every test module imports them from here.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from fastapi import FastAPI
from fastapi import Request as HttpRequest
from fastapi.responses import HTMLResponse, RedirectResponse, Response
from sqlalchemy import Integer, String
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from fragcache.events.schemas import RecordEventType
from fragcache.fragments.model import Fragment
from fragcache.fragments.subscriptions import subscribe

# -----------------------------------------------------------------------------
# Records
# -----------------------------------------------------------------------------


class RecordBase(DeclarativeBase):
    pass


class Article(RecordBase):
    __tablename__ = "articles"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    title: Mapped[str] = mapped_column(String(200), default="")


class Comment(RecordBase):
    __tablename__ = "comments"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    article_id: Mapped[int] = mapped_column(Integer)
    body: Mapped[str] = mapped_column(String(500), default="")


@dataclass
class User:
    id: int
    admin: bool = False


def staff_or_member(user: Any) -> str:
    return "admin" if user is not None and user.admin else "signed_in"


# -----------------------------------------------------------------------------
# Fragment variants
# -----------------------------------------------------------------------------


class Page(Fragment):
    needs_record_id = True
    record_type = "Article"
    needs_user_type = True

    @classmethod
    def request_path_for(cls, record_id: Any) -> str:
        return f"/pages/{record_id}"

    def request_path(self) -> str:
        return self.request_path_for(self.record_id)


class Section(Fragment):
    needs_key = True


class Sidebar(Fragment):
    needs_key = True
    key_name = "slug"


class ArticlePage(Fragment):
    needs_record_id = True
    record_type = "Article"
    user_types = ("signed_in", "signed_out")

    @classmethod
    def request_path_for(cls, record_id: Any) -> str:
        return f"/articles/{record_id}"

    def request_path(self) -> str:
        return self.request_path_for(self.record_id)

    @subscribe("Article", RecordEventType.UPDATED)
    @classmethod
    async def article_updated(cls, repo: Any, article: Article) -> None:
        await repo.touch_fragments_for_record(cls, article.id)


class ArticleBody(Fragment):
    pass


class CommentList(Fragment):
    list_membership = "Comment"
    list_record = "article_id"


class DelayedCommentList(Fragment):
    list_membership = "Comment"
    list_record = staticmethod(lambda comment: comment.article_id)
    list_delay = True


class CommentItem(Fragment):
    needs_record_id = True
    record_type = "Comment"


class UserPanel(Fragment):
    needs_user_id = True
    needs_user_type = True
    user_types = ("admin", "signed_in")
    user_type_mapping = staticmethod(staff_or_member)

    def request_path(self) -> str:
        return "/dashboard"

    request_options = {"xhr": True}


# -----------------------------------------------------------------------------
# Application
# -----------------------------------------------------------------------------

CSRF_TOKEN = "csrf-123"


def build_app() -> FastAPI:
    """A small application with a sign-in form, recording every page hit.

    Hits are appended to ``app.state.hits`` as dicts with the method, path,
    signed-in user (from the session cookie), xhr flag and parameters.
    """
    app = FastAPI()
    app.state.hits = []

    @app.get("/users/sign_in", response_class=HTMLResponse)
    async def sign_in_form() -> str:
        return f'<html><head><meta name="csrf-token" content="{CSRF_TOKEN}"></head></html>'

    @app.post("/users/sign_in")
    async def sign_in(request: HttpRequest) -> Response:
        form = await request.form()
        if form.get("authenticity_token") != CSRF_TOKEN or form.get("user[password]") != "secret":
            return HTMLResponse("<p>denied</p>", status_code=401)
        response = RedirectResponse("/", status_code=302)
        response.set_cookie("session", str(form.get("user[email]")))
        return response

    @app.get("/", response_class=HTMLResponse)
    async def home() -> str:
        return "<p>home</p>"

    @app.api_route("/{path:path}", methods=["GET", "POST"])
    async def page(path: str, request: HttpRequest) -> Response:
        if request.method == "POST":
            parameters = {key: value for key, value in (await request.form()).items()}
        else:
            parameters = dict(request.query_params)
        app.state.hits.append(
            {
                "method": request.method,
                "path": f"/{path}",
                "user": request.cookies.get("session"),
                "xhr": request.headers.get("x-requested-with") == "XMLHttpRequest",
                "parameters": parameters,
            }
        )
        return HTMLResponse(f"<p>{path}</p>")

    return app
