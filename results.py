"""Success/failure values returned by every outbound call.

Callers match on the variant and decide whether a failure is fatal:

    result = mpesa.stk_push(phone, amount)
    if isinstance(result, Err):
        raise HTTPException(status_code=502, detail=result.message)
"""

from dataclasses import dataclass
from typing import Any, Generic, Optional, TypeVar, Union

T = TypeVar("T")


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T

    @property
    def ok(self) -> bool:
        return True


@dataclass(frozen=True)
class Err:
    message: str
    status_code: Optional[int] = None
    detail: Any = None

    @property
    def ok(self) -> bool:
        return False


Result = Union[Ok[T], Err]
