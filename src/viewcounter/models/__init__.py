from .base import Base
from .badge import BadgeQuery
from .profile_view import ProfileView

__all__ = ["Base", "BadgeQuery", "ProfileView"]
