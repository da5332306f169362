from fastapi import Request
from .services.link_cache import LinkCache
from .services.redirector import Redirector

# Built in the application lifespan and stored on app.state; tests
# override these dependencies with instances wired to fakes.

def get_redirector(request: Request) -> Redirector:
    return request.app.state.redirector

def get_link_cache(request: Request) -> LinkCache:
    return request.app.state.link_cache
