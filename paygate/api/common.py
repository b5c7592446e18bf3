"""
Shared request envelope and dependencies for the action endpoints.

Every action is a POST carrying ``{"input": {...}, "session_variables": {...}}``,
the shape an action gateway forwards. Field names are camelCase on the wire.
"""

from typing import Generic, Optional, TypeVar

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from paygate.database import async_session
from paygate.engine.service import PaymentGatewayService

T = TypeVar("T")

USER_ID_VARIABLE = "x-hasura-user-id"


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)


class ActionRequest(BaseModel, Generic[T]):
    input: T
    session_variables: dict[str, str] = {}

    def user_id(self) -> Optional[str]:
        return self.session_variables.get(USER_ID_VARIABLE)


class SuccessResponse(CamelModel):
    success: bool = True


def get_service() -> PaymentGatewayService:
    return PaymentGatewayService(async_session)
