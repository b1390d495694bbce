from fastapi import FastAPI, Request
from starlette.responses import Response


ROBOTS_HEADER = "noindex, nofollow, noarchive"

# JSON API only: nothing is framed, sniffed, cached or referred onwards.
API_HEADERS = {
    "X-Robots-Tag": ROBOTS_HEADER,
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "Referrer-Policy": "no-referrer",
    "Cache-Control": "no-store",
}


def apply_api_headers(response: Response) -> Response:
    """Add the API headers without clobbering ones a route set itself."""
    for name, value in API_HEADERS.items():
        if name not in response.headers:
            response.headers[name] = value
    return response


def install_security_headers(app: FastAPI) -> None:
    @app.middleware("http")
    async def add_security_headers(request: Request, call_next):
        return apply_api_headers(await call_next(request))
