"""Vercel Serverless Function: POST /api/webhook

Handles Lemon Squeezy webhook events to issue and revoke plugin licenses.
Events handled:
  - order_created  -> sign and store a license, email it to the buyer
  - order_refunded -> mark the stored license as refunded
Returns 500 only when the provider should retry.
"""

import _shared  # noqa: F401

from fedlicense.server import WebhookHandler  # noqa: E402


class handler(WebhookHandler):
    pass
