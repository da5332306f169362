import secrets
import string
from starlette.requests import Request

ALPHABET = string.ascii_letters + string.digits

def generate_random_code(length: int = 7) -> str:
    return "".join(secrets.choice(ALPHABET) for _ in range(length))

def get_client_ip(request: Request) -> str:
    # Behind a proxy the first X-Forwarded-For hop is the visitor
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else ""
