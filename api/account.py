"""Vercel Serverless Function: GET /api/account

Lists the signed-in Clerk user's licenses. Requires a Clerk session token
in the Authorization header; lookup problems yield an empty list, never 500.
"""

import _shared  # noqa: F401

from fedlicense.server import AccountHandler  # noqa: E402


class handler(AccountHandler):
    pass
