"""Vercel Serverless Function: POST /api/admin

Privileged license search by email / orderNumber / productId.
Requires ADMIN_API_KEY via the X-Admin-Key header or ?key=.
"""

import _shared  # noqa: F401

from fedlicense.server import AdminHandler  # noqa: E402


class handler(AdminHandler):
    pass
