"""
Transactional email content.

``generate_email_template`` is pure: (kind, data, base_url) -> subject, html, text, tags.
Links are computed once into a ``_Context`` that feeds both bodies, so the HTML and
plain-text versions can never point at different URLs.
"""
from __future__ import annotations

import enum
from dataclasses import dataclass
from html import escape
from urllib.parse import quote


class EmailKind(str, enum.Enum):
    verification = "verification"
    welcome = "welcome"
    launch_notification = "launch_notification"


@dataclass(frozen=True)
class EmailData:
    email: str
    verification_token: str | None = None
    unsubscribe_token: str | None = None
    first_name: str | None = None
    waitlist_position: int | None = None


@dataclass(frozen=True)
class RenderedEmail:
    subject: str
    html: str
    text: str
    tags: list[str]


@dataclass(frozen=True)
class _Context:
    brand: str
    greeting_name: str
    verify_url: str | None
    unsubscribe_url: str | None
    privacy_url: str
    home_url: str
    waitlist_position: int | None
    ttl_hours: int


def _build_context(data: EmailData, base_url: str, brand: str, ttl_hours: int) -> _Context:
    base = (base_url or "").rstrip("/")
    verify_url = (
        f"{base}/waitlist/verify?token={quote(data.verification_token, safe='')}"
        if data.verification_token else None
    )
    unsubscribe_url = (
        f"{base}/waitlist/unsubscribe?token={quote(data.unsubscribe_token, safe='')}"
        if data.unsubscribe_token else None
    )
    return _Context(
        brand=brand,
        greeting_name=(data.first_name or "").strip() or "there",
        verify_url=verify_url,
        unsubscribe_url=unsubscribe_url,
        privacy_url=f"{base}/privacy-policy",
        home_url=base or "/",
        waitlist_position=data.waitlist_position if data.waitlist_position and data.waitlist_position > 0 else None,
        ttl_hours=ttl_hours,
    )


def _layout(ctx: _Context, title: str, body: str) -> str:
    unsubscribe = (
        f' | <a href="{escape(ctx.unsubscribe_url)}" style="color:#ff6b9d;">Unsubscribe</a>'
        if ctx.unsubscribe_url else ""
    )
    return f"""<!DOCTYPE html>
<html lang="en">
<head>
  <meta charset="UTF-8">
  <meta name="viewport" content="width=device-width, initial-scale=1.0">
  <title>{escape(title)} - {escape(ctx.brand)}</title>
</head>
<body style="margin:0;padding:0;background:#0a0a0a;font-family:-apple-system,BlinkMacSystemFont,'Segoe UI',Roboto,Arial,sans-serif;line-height:1.6;">
  <div style="max-width:600px;margin:0 auto;background:#1a1a1a;border-radius:16px;overflow:hidden;">
    <div style="background:linear-gradient(135deg,#ff6b9d 0%,#4ecdc4 100%);padding:40px 20px;text-align:center;color:#fff;">
      <div style="font-size:32px;font-weight:bold;">{escape(ctx.brand)}</div>
    </div>
    <div style="padding:40px 20px;color:#fff;text-align:center;">
{body}
    </div>
    <div style="background:#111;padding:30px 20px;text-align:center;color:#888;font-size:14px;">
      <p><a href="{escape(ctx.privacy_url)}" style="color:#ff6b9d;">Privacy Policy</a>{unsubscribe}</p>
      <p style="font-size:12px;">You received this email because you signed up for the {escape(ctx.brand)} waitlist.</p>
    </div>
  </div>
</body>
</html>
"""


def _button(url: str, label: str) -> str:
    return (
        f'<a href="{escape(url)}" style="display:inline-block;background:linear-gradient(135deg,#ff6b9d 0%,#4ecdc4 100%);'
        f'color:#fff;text-decoration:none;padding:16px 32px;border-radius:50px;font-weight:600;">{escape(label)}</a>'
    )


def _text_footer(ctx: _Context) -> str:
    lines = ["---", f"Privacy Policy: {ctx.privacy_url}"]
    if ctx.unsubscribe_url:
        lines.append(f"Unsubscribe: {ctx.unsubscribe_url}")
    return "\n".join(lines)


def _verification(ctx: _Context) -> tuple[str, str, str, list[str]]:
    if not ctx.verify_url:
        raise ValueError("verification email requires a verification token")
    subject = f"Verify your email - welcome to {ctx.brand}!"
    body = f"""      <h1>Almost there!</h1>
      <p style="color:#ccc;">Hi {escape(ctx.greeting_name)}, thanks for joining. Please verify your email address to secure your spot on the waitlist.</p>
      <p>{_button(ctx.verify_url, "Verify My Email")}</p>
      <p style="font-size:12px;color:#888;">This link will expire in {ctx.ttl_hours} hours for security reasons.</p>
      <p style="font-size:14px;color:#888;">Having trouble with the button? Copy and paste this link:<br>
        <a href="{escape(ctx.verify_url)}" style="color:#ff6b9d;word-break:break-all;">{escape(ctx.verify_url)}</a></p>
      <p style="font-size:12px;color:#888;">If you didn't sign up, you can safely ignore this email.</p>"""
    text = f"""Welcome to {ctx.brand} - verify your email

Hi {ctx.greeting_name}!

Thanks for joining the {ctx.brand} waitlist.

VERIFY YOUR EMAIL:
{ctx.verify_url}

This verification link expires in {ctx.ttl_hours} hours.
If you didn't sign up, you can safely ignore this email.

The {ctx.brand} Team

{_text_footer(ctx)}
"""
    return subject, _layout(ctx, "Verify Your Email", body), text, ["verification", "waitlist"]


def _welcome(ctx: _Context) -> tuple[str, str, str, list[str]]:
    subject = f"Welcome to {ctx.brand} - you're in!"
    position_html = (
        f'<p style="display:inline-block;background:#ff6b9d;color:#fff;padding:10px 20px;border-radius:50px;font-weight:600;">'
        f"You're #{ctx.waitlist_position} on the waitlist!</p>"
        if ctx.waitlist_position else ""
    )
    position_text = f"You're #{ctx.waitlist_position} on the waitlist!\n\n" if ctx.waitlist_position else ""
    body = f"""      <h1>You're in!</h1>
      <h2 style="color:#4ecdc4;">Email verified successfully</h2>
      <p style="color:#ccc;">Hi {escape(ctx.greeting_name)}, you're now officially on the {escape(ctx.brand)} waitlist.</p>
      {position_html}
      <p style="color:#ccc;">We'll send you updates about our progress and let you know the moment we launch.</p>"""
    text = f"""Welcome to {ctx.brand} - you're in!

Hi {ctx.greeting_name}, your email has been verified successfully.

{position_text}We'll send you updates about our progress and let you know the moment we launch.

The {ctx.brand} Team

{_text_footer(ctx)}
"""
    return subject, _layout(ctx, "Welcome", body), text, ["welcome", "waitlist", "verified"]


def _launch(ctx: _Context) -> tuple[str, str, str, list[str]]:
    subject = f"{ctx.brand} is now live - your early access awaits"
    body = f"""      <h1>It's live!</h1>
      <p style="color:#ccc;">Hi {escape(ctx.greeting_name)}, thanks to people like you, {escape(ctx.brand)} is now live.</p>
      <p>{_button(ctx.home_url, "Get Early Access Now")}</p>"""
    text = f"""{ctx.brand} is now live!

Hi {ctx.greeting_name}, thanks to people like you, {ctx.brand} is now live.

Get early access: {ctx.home_url}

The {ctx.brand} Team

{_text_footer(ctx)}
"""
    return subject, _layout(ctx, "We're Live", body), text, ["launch", "early-access"]


_RENDERERS = {
    EmailKind.verification: _verification,
    EmailKind.welcome: _welcome,
    EmailKind.launch_notification: _launch,
}


def generate_email_template(
    kind: EmailKind | str,
    data: EmailData,
    base_url: str,
    *,
    brand: str = "Waitlist",
    ttl_hours: int = 24,
) -> RenderedEmail:
    try:
        renderer = _RENDERERS[EmailKind(kind)]
    except ValueError:
        raise ValueError(f"Unknown email template type: {kind}") from None
    ctx = _build_context(data, base_url, brand, ttl_hours)
    subject, html, text, tags = renderer(ctx)
    return RenderedEmail(subject=subject, html=html, text=text, tags=list(tags))
