"""Google OAuth connection management."""

from .oauth import GoogleOAuthManager
from .token_store import FileTokenStore

__all__ = ['GoogleOAuthManager', 'FileTokenStore']
