"""
Server-rendered pages.

Every page requires an authenticated principal (enforced where the
router is included). The error page is registered in development only.
"""

from html import escape

from fastapi import APIRouter, Request
from fastapi.responses import HTMLResponse

router = APIRouter(tags=["Pages"], include_in_schema=False)
error_router = APIRouter(include_in_schema=False)

PAGE_TEMPLATE = """<!DOCTYPE html>
<html lang="en">
<head>
    <meta charset="utf-8" />
    <title>{title}</title>
    <link rel="stylesheet" href="/static/site.css" />
</head>
<body>
<main>
{body}
</main>
</body>
</html>
"""


def render_page(title: str, body: str, status_code: int = 200) -> HTMLResponse:
    return HTMLResponse(PAGE_TEMPLATE.format(title=escape(title), body=body), status_code=status_code)


def render_error_page(request: Request, status_code: int = 500) -> HTMLResponse:
    correlation_id = getattr(request.state, "correlation_id", None)
    body = "<h1>Error.</h1>\n<p>An error occurred while processing your request.</p>"
    if correlation_id:
        body += f"\n<p><strong>Correlation ID:</strong> <code>{escape(correlation_id)}</code></p>"
    return render_page("Error", body, status_code=status_code)


@router.get("/", response_class=HTMLResponse)
@router.get("/Index", response_class=HTMLResponse)
@router.get("/Index.html", response_class=HTMLResponse)
async def index(request: Request) -> HTMLResponse:
    user = request.session["user"]
    name = user.get("name") or user.get("sub") or ""
    verified = "yes" if user.get("email_verified") else "no"
    body = (
        f"<h1>Welcome, {escape(str(name))}</h1>\n"
        f"<p>Email verified: {verified}</p>\n"
        '<p><a href="/signout">Sign out</a></p>'
    )
    return render_page(request.app.title, body)


@error_router.get("/Error", response_class=HTMLResponse)
async def error_page(request: Request) -> HTMLResponse:
    return render_error_page(request, status_code=200)
