from typing import Any, Optional

from pydantic import BaseModel


class CredentialResponse(BaseModel):
    status: Any = ""
    record: Any = ""
    id: Any = ""
    KCC: Any = ""

    @classmethod
    def from_result(cls, data: dict) -> "CredentialResponse":
        return cls(**{
            name: "" if data.get(name) is None else data[name]
            for name in cls.model_fields
        })


class HealthResponse(BaseModel):
    status: str = "ok"
    registered: bool
    didURI: Optional[str] = None
    authURL: Optional[str] = None
