from dataclasses import dataclass
from typing import Any, Dict, List, Optional


@dataclass
class UserContext:
    """
    Context object for carrying the signed-in user through job operations.

    The session system that produces it is external; JobCore only reads the
    user id to scope every query to the owner's jobs.

    Attributes:
        user_id: Unique identifier for the user
        user_email: Optional email address of the user
        roles: Optional list of user roles
        attributes: Optional dictionary for custom user attributes
    """
    user_id: Optional[str]
    user_email: Optional[str] = None
    roles: Optional[List[str]] = None
    attributes: Optional[Dict[str, Any]] = None

    @property
    def is_authenticated(self) -> bool:
        return bool(self.user_id)
