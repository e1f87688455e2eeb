import json
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .security import MAX_ARTWORK_ID_LENGTH, MAX_KEY_ID_LENGTH
from .util import generate_id, utc_now_rfc3339


class ScanState(str, Enum):
    """Terminal classification of one verification attempt."""
    AUTHENTIC = "authentic"
    MISMATCH = "mismatch"
    CLONED = "cloned"
    INVALID = "invalid"


class Chip(BaseModel):
    id: str
    tag_id: str
    # never serialized back to callers
    secret: Optional[str] = Field(default=None, repr=False, exclude=True)
    public_key: Optional[str] = None
    counter: int = 0


class ScanEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=generate_id)
    chip_id: Optional[str] = None
    artwork_id: Optional[str] = None
    state: ScanState
    ip: Optional[str] = None
    user_agent: Optional[str] = None
    created_at: str = Field(default_factory=utc_now_rfc3339)


REQUIRED_FIELDS = ("a", "c", "ctr")


class VerifyRequest(BaseModel):
    """
    Inbound scan, from the query string (GET) or a JSON body (POST).

    a: tag identifier, c: hex signature, ctr: counter,
    t: key identifier (pass-through), page_artwork_id: artwork the caller is viewing.

    a, c and ctr take any JSON scalar as its JSON text and carry no length
    limit here: a present but malformed value is judged by the verifier
    (unknown tag, failed signature, bad counter), not reported as missing.
    """
    model_config = ConfigDict(extra="ignore")

    a: Optional[str] = None
    c: Optional[str] = None
    ctr: Optional[str] = None
    t: Optional[str] = Field(default=None, max_length=MAX_KEY_ID_LENGTH)
    page_artwork_id: Optional[str] = Field(default=None, max_length=MAX_ARTWORK_ID_LENGTH)

    @field_validator("a", "c", "ctr", "t", "page_artwork_id", mode="before")
    @classmethod
    def _scalar_as_text(cls, value: Any) -> Any:
        # 7 -> "7", 2.0 -> "2.0", true -> "true"; lists and objects still fail
        if isinstance(value, (bool, int, float)):
            return json.dumps(value)
        return value

    @field_validator("a", "c", "ctr", "t", "page_artwork_id", mode="after")
    @classmethod
    def _blank_is_absent(cls, value: Optional[str]) -> Optional[str]:
        if value is None or value.strip() == "":
            return None
        return value

    def missing_fields(self) -> List[str]:
        return [name for name in REQUIRED_FIELDS if getattr(self, name) is None]


def parse_verify_request(raw: Dict[str, Any]) -> VerifyRequest:
    """
    Validate a raw request mapping.

    Fields that fail the schema (non-scalar values, oversize optional fields)
    are dropped and treated as absent; the rest of the request is kept.
    """
    if not isinstance(raw, dict):
        return VerifyRequest()
    try:
        return VerifyRequest.model_validate(raw)
    except ValidationError as e:
        rejected = {err["loc"][0] for err in e.errors() if err["loc"]}
    return VerifyRequest.model_validate({k: v for k, v in raw.items() if k not in rejected})
