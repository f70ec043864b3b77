from typing import Literal

from pydantic import BaseModel

Role = Literal["admin", "recipient"]


class UserContext(BaseModel):
    user_id: str
    role: Role

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"
