"""License delivery email via the Postmark HTTP API."""

from __future__ import annotations

import json
import logging
import urllib.request

from fedlicense.config import Settings
from fedlicense.schema import LicenseRecord
from fedlicense.utils import mask_email

logger = logging.getLogger("fedlicense.notify")

POSTMARK_URL = "https://api.postmarkapp.com/email"


def build_license_email(record: LicenseRecord, *, brand: str, support_email: str) -> dict:
    """Postmark message body for a freshly issued license."""
    product = record.product_code
    text_body = "\n".join(
        [
            f"Hi {record.user_name},",
            "",
            f"Thanks for your purchase! Here's your license for {product}:",
            "",
            record.license_string,
            "",
            "How to activate:",
            f"1) Open the {product} plugin.",
            "2) Press the I button on the menu bar: this opens the Information panel",
            "3) Press the license button and paste your license code, including the lines "
            f'"-----BEGIN {brand} LICENSE-----" and "-----END {brand} LICENSE-----"',
            "",
            f"Order: {record.license_id}",
            f"Issued to: {record.user_email}",
            f"Issued at: {record.issued_at} UTC",
            "",
            f"Need help? Contact {support_email}.",
            "",
            f"Thanks, {brand}",
        ]
    )
    return {
        "To": record.user_email,
        "Subject": f"Your {brand} license for {product}",
        "TextBody": text_body,
        "ReplyTo": support_email,
    }


class PostmarkNotifier:
    def __init__(self, settings: Settings):
        self.settings = settings

    @property
    def configured(self) -> bool:
        return bool(self.settings.postmark_api_key and self.settings.mail_from)

    def send_license(self, record: LicenseRecord) -> bool:
        """Send the license email. Returns False when mail is not configured."""
        if not self.configured:
            logger.warning(
                "POSTMARK_API_KEY or MAIL_FROM not set; license %s not emailed", record.license_id
            )
            return False

        message = build_license_email(
            record,
            brand=self.settings.brand,
            support_email=self.settings.support_email or self.settings.mail_from,
        )
        message["From"] = self.settings.mail_from
        req = urllib.request.Request(
            POSTMARK_URL,
            data=json.dumps(message).encode(),
            method="POST",
            headers={
                "X-Postmark-Server-Token": self.settings.postmark_api_key.get_secret_value(),
                "Content-Type": "application/json",
                "Accept": "application/json",
            },
        )
        with urllib.request.urlopen(req, timeout=10) as resp:  # noqa: S310
            status = resp.status
        if status != 200:
            logger.warning("Postmark returned %s for license %s", status, record.license_id)
            return False
        logger.info("License %s emailed to %s", record.license_id, mask_email(record.user_email))
        return True
