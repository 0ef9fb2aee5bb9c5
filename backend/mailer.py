# mailer.py — Outbound transactional email (Resend HTTP API)
"""
Invitation emails are sent through Resend's REST endpoint with httpx.
When RESEND_API_KEY is unset the message is logged and skipped, so local
development and tests never reach the network.
"""
import os
import html
import logging
from typing import Optional

import httpx

logger = logging.getLogger("kanbanflow.mail")

RESEND_API_KEY = os.getenv("RESEND_API_KEY", "")
RESEND_API_URL = os.getenv("RESEND_API_URL", "https://api.resend.com/emails")
FROM_EMAIL = os.getenv("FROM_EMAIL", "KanbanFlow <noreply@kanbanflow.com>")
CLIENT_URL = os.getenv("CLIENT_URL", "http://localhost:5173").split(",")[0].strip()


class EmailDeliveryError(Exception):
    pass


def invitation_link(token: str) -> str:
    return f"{CLIENT_URL}/accept-invite/{token}"


def render_invitation(board_title: str, inviter_name: str, token: str) -> str:
    link = invitation_link(token)
    board = html.escape(board_title)
    inviter = html.escape(inviter_name)
    return (
        '<div style="font-family: sans-serif; max-width: 600px; margin: 0 auto;">'
        "<h2>You've been invited to collaborate!</h2>"
        f"<p><strong>{inviter}</strong> has invited you to collaborate on the board "
        f"<strong>&quot;{board}&quot;</strong> in KanbanFlow.</p>"
        f'<p><a href="{link}" style="background-color: #3B82F6; color: white; '
        'padding: 12px 24px; text-decoration: none; border-radius: 6px;">Accept Invitation</a></p>'
        f"<p>Or copy and paste this link into your browser: {link}</p>"
        "<p>This invitation will expire in 7 days.</p>"
        "</div>"
    )


async def send_invitation_email(
    to: str,
    board_title: str,
    inviter_name: str,
    token: str,
    client: Optional[httpx.AsyncClient] = None,
) -> bool:
    """Send an invitation email. Returns False when delivery is disabled."""
    if not RESEND_API_KEY:
        logger.info(f"Email disabled (RESEND_API_KEY not set); invitation link for {to}: {invitation_link(token)}")
        return False

    payload = {
        "from": FROM_EMAIL,
        "to": [to],
        "subject": f"You've been invited to collaborate on \"{board_title}\"",
        "html": render_invitation(board_title, inviter_name, token),
    }
    headers = {"Authorization": f"Bearer {RESEND_API_KEY}"}

    owns_client = client is None
    client = client or httpx.AsyncClient(timeout=10.0)
    try:
        resp = await client.post(RESEND_API_URL, json=payload, headers=headers)
        if resp.status_code >= 400:
            raise EmailDeliveryError(f"Resend returned {resp.status_code}: {resp.text[:200]}")
        logger.info(f"Invitation email sent to {to}")
        return True
    except httpx.HTTPError as e:
        raise EmailDeliveryError(str(e)) from e
    finally:
        if owns_client:
            await client.aclose()
