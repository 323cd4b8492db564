"""Small HTML status pages for the emailed verify / unsubscribe links."""
import html

from fastapi.responses import HTMLResponse

_PAGE = """<!DOCTYPE html>
<html lang="en">
<head>
  <meta charset="UTF-8">
  <meta name="viewport" content="width=device-width, initial-scale=1.0">
  <title>{title} - {brand}</title>
  <style>
    body {{ font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; margin: 0; padding: 20px; background: #0a0a0a; color: #fff; }}
    .container {{ max-width: 700px; margin: 0 auto; text-align: center; padding: 60px 24px; }}
    .title {{ color: {color}; font-size: 36px; font-weight: 800; margin-bottom: 16px; }}
    .msg {{ color: #ccc; font-size: 18px; margin-bottom: 28px; }}
    .button {{ display: inline-block; padding: 12px 24px; background: #4ecdc4; color: #fff; text-decoration: none; border-radius: 9999px; font-weight: 700; }}
  </style>
</head>
<body>
  <div class="container">
    <h1 class="title">{title}</h1>
    <p class="msg">{message}</p>
    <a href="{home}" class="button">Return to Homepage</a>
  </div>
</body>
</html>
"""


def render_status_page(
    title: str,
    message: str,
    status_code: int = 200,
    *,
    success: bool = False,
    brand: str = "Waitlist",
    home_url: str = "/",
    headers: dict[str, str] | None = None,
) -> HTMLResponse:
    body = _PAGE.format(
        title=html.escape(title),
        message=html.escape(message),
        brand=html.escape(brand),
        color="#4ecdc4" if success else "#ff6b9d",
        home=html.escape(home_url, quote=True),
    )
    return HTMLResponse(body, status_code=status_code, headers=headers)


# (title, message) per status for the emailed links
VERIFY_PAGES = {
    200: ("Email Verified Successfully!", "Welcome to the waitlist! You're all set to be notified when we launch."),
    400: ("Invalid Verification Link", "This verification link is invalid or malformed."),
    404: ("Verification Failed", "Invalid or expired verification token"),
    429: ("Too Many Attempts", "Please try again later."),
    500: ("Verification Error", "We couldn't verify your email at this time. Please try again later."),
}

UNSUBSCRIBE_PAGES = {
    200: ("Unsubscribed", "You have been unsubscribed from our mailing list."),
    400: ("Invalid Unsubscribe Link", "This unsubscribe link is invalid or malformed."),
    404: ("Unsubscribe Failed", "Invalid unsubscribe token"),
    429: ("Too Many Requests", "Please try again later."),
    500: ("Unsubscribe Error", "We couldn't process your request at this time. Please try again later."),
}


def page_for(pages: dict[int, tuple[str, str]], status_code: int, message: str | None = None) -> tuple[str, str]:
    """Title and message for a status. A client-facing message from the service replaces the default for 2xx/4xx."""
    key = status_code if status_code in pages else (500 if status_code >= 500 else 400)
    title, default = pages[key]
    if message and status_code < 500:
        return title, message
    return title, default
