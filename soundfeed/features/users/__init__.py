"""
User management module.

Usage:
    from soundfeed.features.users import User, UserRepository, CredentialStore

Models:
- User: Application user with Spotify credentials

Repositories / stores:
- UserRepository: Data access for users
- CredentialStore: Credential pair + expiry per user
"""

from .models import User
from .repository import UserRepository
from .credentials import CredentialStore, Credentials, compute_expiry

__all__ = [
    "User",
    "UserRepository",
    "CredentialStore",
    "Credentials",
    "compute_expiry",
]
