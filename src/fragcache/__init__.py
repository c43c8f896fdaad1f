"""fragcache: fragment cache invalidation and request replay.

Cached page content is modeled as a tree of fragments. Record changes touch
or destroy the affected fragments, and touched fragments queue requests that
re-render and re-cache their pages out of band.
"""

__version__ = "0.1.0"
