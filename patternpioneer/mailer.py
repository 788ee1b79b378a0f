from html import escape
from typing import List, Optional, TypedDict

import resend
import structlog
from starlette.concurrency import run_in_threadpool

from .errors import MailError

logger = structlog.get_logger()


class EmailItem(TypedDict):
    pattern_name: str
    price: str
    download_url: str


class ResendMailer:
    """
    Transactional email through Resend. Bodies are plain inline HTML.
    """

    def __init__(self, api_key: str, sender: str):
        self.sender = sender
        self.configured = bool(api_key)
        if api_key:
            resend.api_key = api_key

    async def send(self, to: str, subject: str, html: str) -> Optional[str]:
        if not self.configured:
            raise MailError("Resend API key is not configured.")
        payload = {
            "from": self.sender,
            "to": [to],
            "subject": subject,
            "html": html,
        }
        try:
            response = await run_in_threadpool(resend.Emails.send, payload)
        except Exception as e:
            raise MailError(str(e)) from e
        email_id = response.get("id") if hasattr(response, "get") else None
        logger.info("email.sent", to=to, subject=subject, email_id=email_id)
        return email_id

    async def send_order_confirmation(
        self,
        to: str,
        customer_name: str,
        order_number: str,
        order_date: str,
        items: List[EmailItem],
        total: str,
    ) -> Optional[str]:
        rows = "".join(
            f"<tr><td>{escape(i['pattern_name'])}</td>"
            f"<td>{escape(i['price'])}</td>"
            f"<td><a href=\"{escape(i['download_url'])}\">Download</a></td>"
            "</tr>"
            for i in items
        )
        html = (
            f"<p>Hi {escape(customer_name)},</p>"
            f"<p>Thanks for your order <strong>{escape(order_number)}</strong>"
            f" placed on {escape(order_date)}.</p>"
            f"<table>{rows}</table>"
            f"<p>Total: <strong>{escape(total)}</strong></p>"
        )
        return await self.send(to, f"Order Confirmation - {order_number}",
                               html)

    async def send_free_download(
        self, to: str, pattern_name: str, download_url: str
    ) -> Optional[str]:
        html = (
            f"<p>Your free <strong>{escape(pattern_name)}</strong> pattern "
            "is ready.</p>"
            f"<p><a href=\"{escape(download_url)}\">Download it here</a>.</p>"
        )
        return await self.send(
            to, f"Your Free {pattern_name} Pattern is Ready!", html
        )
