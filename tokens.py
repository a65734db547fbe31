from datetime import datetime, timezone
from typing import Optional
import jwt

def token_expiry(token: Optional[str]) -> Optional[datetime]:
    """Expiry embedded in the bearer token. The proxy verifies the signature; the device only reads `exp`."""
    if not token: return None
    try:
        claims = jwt.decode(token, options={"verify_signature": False, "verify_exp": False})
    except jwt.PyJWTError:
        return None
    exp = claims.get("exp")
    return datetime.fromtimestamp(exp, tz=timezone.utc) if isinstance(exp, (int, float)) else None

def is_token_expired(token: Optional[str], at: datetime) -> bool:
    exp = token_expiry(token)
    return exp is None or at >= exp
