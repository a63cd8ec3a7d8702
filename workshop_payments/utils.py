import secrets
import string
import time
from fastapi import Header, HTTPException, Request
from typing import Optional
from .config import settings
from .services.sumup import SumUpService

REFERENCE_ALPHABET = string.ascii_uppercase + string.digits

def require_service_api_key(x_api_key: Optional[str] = Header(default=None)):
    if x_api_key != settings.service_api_key:
        raise HTTPException(status_code=401, detail="Invalid X-API-KEY")
    return True

def get_actor_id(x_user_id: Optional[int] = Header(default=None)) -> int:
    # staff user who triggered the call, forwarded by the main app
    return x_user_id or 1

def get_sumup(request: Request) -> Optional[SumUpService]:
    return getattr(request.app.state, "sumup", None)

def generate_checkout_reference() -> str:
    suffix = "".join(secrets.choice(REFERENCE_ALPHABET) for _ in range(6))
    return f"WS-{int(time.time() * 1000)}-{suffix}"
