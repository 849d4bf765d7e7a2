"""MirrorChat: a chat backend that answers each user message with a scripted "mirror" reply.

Conversations live in a realtime conversation store (in memory, on disk, or a
Firebase Realtime Database) and are served by a FastAPI application created
with :func:`create_app`.

Typical usage
-------------
from mirror_chat import create_app
app = create_app()

or, from the provided launcher:

python scripts/run_server.py --host 127.0.0.1 --port 8000
"""

from __future__ import annotations

__all__ = ["create_app", "__version__", "get_version"]

# ---------------------------------------------------------------------
# Version handling
# ---------------------------------------------------------------------
__version__ = "0.1.0"


def get_version() -> str:
    """Return the package version."""
    return __version__


# ---------------------------------------------------------------------
# App factory export
# ---------------------------------------------------------------------
def create_app(*args, **kwargs):
    """Return a configured FastAPI application.

    This forwards to :func:`mirror_chat.server.create_app`; the import is
    deferred so the reply and store modules can be used without loading
    the web stack.
    """
    from .server import create_app as _create_app

    return _create_app(*args, **kwargs)
