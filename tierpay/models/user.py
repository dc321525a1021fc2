from typing import Optional
from pydantic import BaseModel, ConfigDict

from tierpay.models.billing import SubscriptionFact


class User(BaseModel):
    model_config = ConfigDict(frozen=True)

    user_id: str
    username: str
    email: str
    first_name: Optional[str] = None
    subscription: SubscriptionFact = SubscriptionFact()

    @property
    def display_name(self) -> str:
        if self.first_name and self.first_name.strip():
            return self.first_name.strip()
        return self.username
