"""User profile row from the user_profiles table."""

from datetime import datetime
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, field_validator

from guardian.models.premium import Premium


class UserProfile(BaseModel):
    """
    A user_profiles row as far as billing is concerned.

    Attributes:
        id: Opaque user ID owned by the identity provider
        stripe_customer_id: Stripe customer linked to this user
        premium: Structured premium record, if one was ever written
        created_at: Row creation time
        updated_at: Last row update
    """

    model_config = ConfigDict(extra="ignore")

    id: str
    stripe_customer_id: Optional[str] = None
    premium: Optional[Premium] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @field_validator("premium", mode="before")
    @classmethod
    def _parse_premium(cls, value: Any) -> Optional[Premium]:
        if isinstance(value, Premium):
            return value
        return Premium.from_record(value)

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "UserProfile":
        return cls.model_validate(row)

    @property
    def has_active_premium(self) -> bool:
        return bool(self.premium and self.premium.is_active)

    def __repr__(self) -> str:
        return f"<UserProfile {self.id} customer={self.stripe_customer_id}>"
