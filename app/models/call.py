from pydantic import BaseModel
from typing import Any, Dict, Mapping, Optional
from urllib.parse import urlencode
from enum import Enum
import hashlib
import hmac

class InvalidContinuationError(Exception):
    """Raised when a gather callback carries a continuation that fails verification."""

class GatherOutcome(Enum):
    RETRY = "retry"
    MATCHED = "matched"
    EXHAUSTED = "exhausted"
    FAILED = "failed"

class Continuation(BaseModel):
    """Where a suspended gather resumes: the gather block and how many attempts have failed."""
    block_id: str
    retry: int = 0

    def next_attempt(self) -> "Continuation":
        return Continuation(block_id=self.block_id, retry=self.retry + 1)

    def signature(self, secret: str) -> str:
        payload = f"{self.block_id}:{self.retry}".encode()
        return hmac.new(secret.encode(), payload, hashlib.sha256).hexdigest()[:32]

    def to_query(self, secret: Optional[str] = None) -> Dict[str, str]:
        params = {"blockId": self.block_id, "retry": str(self.retry)}
        if secret:
            params["sig"] = self.signature(secret)
        return params

    def callback_url(self, base_url: str, path: str, secret: Optional[str] = None) -> str:
        return f"{base_url.rstrip('/')}{path}?{urlencode(self.to_query(secret))}"

    def verify(self, signature: Optional[str], secret: Optional[str]) -> None:
        if not secret:
            return
        if not signature or not hmac.compare_digest(signature, self.signature(secret)):
            raise InvalidContinuationError(f"Invalid continuation signature for block {self.block_id}")

class TurnContext(BaseModel):
    """One inbound Twilio request, rebuilt on every turn of the call."""
    call_sid: str = ""
    caller_number: Optional[str] = None
    called_number: Optional[str] = None
    digits: Optional[str] = None
    block_id: Optional[str] = None
    retry: int = 0
    signature: Optional[str] = None

    @property
    def continuation(self) -> Optional[Continuation]:
        if not self.block_id:
            return None
        return Continuation(block_id=self.block_id, retry=self.retry)

    @classmethod
    def from_request(cls, form: Mapping[str, Any], query: Mapping[str, Any]) -> "TurnContext":
        """Build the turn context from Twilio's form body and our callback query string."""
        def text(source: Mapping[str, Any], key: str) -> Optional[str]:
            # Multipart bodies can carry file parts where Twilio sends plain fields
            value = source.get(key)
            if value is None or not isinstance(value, (str, int, float)):
                return None
            return str(value) or None

        try:
            retry = max(int(text(query, "retry") or 0), 0)
        except ValueError:
            retry = 0

        return cls(
            call_sid=text(form, "CallSid") or "",
            caller_number=text(form, "From"),
            called_number=text(form, "To"),
            digits=text(form, "Digits"),
            block_id=text(query, "blockId"),
            retry=retry,
            signature=text(query, "sig"),
        )

class GatherResult(BaseModel):
    outcome: GatherOutcome
    twiml: str
