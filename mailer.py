# mailer.py
import asyncio
import html
import logging

from sendgrid import SendGridAPIClient
from sendgrid.helpers.mail import Mail

logger = logging.getLogger(__name__)

REGISTRATION_SUBJECT = "Your members chat registration link"

REGISTRATION_TEMPLATE = """
<html>
<head>
    <title>Members chat</title>
    <style type="text/css">
        body {{font-family: Arial, sans-serif;}}
        p {{line-height: 1.6;}}
    </style>
</head>
<body>
    <p>Thank you for subscribing.</p>
    <p>Open the link below from the Telegram account you want to use in the members chat.
    The link works for one account only.</p>
    <p><a href="{link}">{link}</a></p>
</body>
</html>
"""


def registration_message(from_email: str, to_email: str, link: str) -> Mail:
    return Mail(
        from_email=from_email,
        to_emails=to_email,
        subject=REGISTRATION_SUBJECT,
        html_content=REGISTRATION_TEMPLATE.format(link=html.escape(link, quote=True)),
    )


class RegistrationMailer:
    def __init__(self, api_key: str, from_email: str, client=None):
        self.from_email = from_email
        self.client = client or SendGridAPIClient(api_key)

    async def send_registration_link(self, to_email: str, link: str) -> int:
        """Deliver the link; returns the SendGrid status code. Errors propagate."""
        message = registration_message(self.from_email, to_email, link)
        response = await asyncio.to_thread(self.client.send, message)
        logger.info(f"Registration link sent to {to_email} with status {response.status_code}")
        return response.status_code
