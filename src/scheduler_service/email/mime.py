"""MIME assembly shared by the SMTP and SES raw-send paths."""

from email.mime.application import MIMEApplication
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import make_msgid

from scheduler_service.email.interfaces import EmailMessage


def build_mime_message(
    message: EmailMessage,
    default_from: str,
    domain: str | None = None,
) -> MIMEMultipart:
    """Build the MIME message; text part first as fallback.

    Bcc recipients never appear in the headers.
    """
    alternative = MIMEMultipart("alternative")
    if message.body_text:
        alternative.attach(MIMEText(message.body_text, "plain", "utf-8"))
    if message.body_html:
        alternative.attach(MIMEText(message.body_html, "html", "utf-8"))

    if message.attachments:
        msg = MIMEMultipart("mixed")
        msg.attach(alternative)
        for attachment in message.attachments:
            part = MIMEApplication(attachment.content, Name=attachment.filename)
            part.replace_header("Content-Type", f'{attachment.content_type}; name="{attachment.filename}"')
            part["Content-Disposition"] = f'attachment; filename="{attachment.filename}"'
            msg.attach(part)
    else:
        msg = alternative

    msg["Subject"] = message.subject
    msg["From"] = message.from_email or default_from
    msg["To"] = ", ".join(message.to)
    if message.cc:
        msg["Cc"] = ", ".join(message.cc)
    if message.reply_to:
        msg["Reply-To"] = message.reply_to
    for header_name, header_value in message.headers.items():
        msg[header_name] = header_value
    msg["Message-ID"] = make_msgid(domain=domain)
    return msg
