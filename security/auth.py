# security/auth.py

import hmac
from typing import Dict, Optional

from core.errors import Unauthorized
from core.models import CallerIdentity


def require_caller(caller: Optional[CallerIdentity]) -> CallerIdentity:
    """Reject calls that arrive without a verified identity"""
    if caller is None or not caller.user_id:
        raise Unauthorized()
    return caller


class TokenAuthenticator:
    """
    Resolves bearer tokens to caller identities.

    Credentials are issued elsewhere; this side only knows which tokens are
    valid and which user each belongs to. Failures never say why.
    """

    def __init__(self, tokens: Dict[str, str]):
        self._tokens = dict(tokens)

    def authenticate(self, authorization: Optional[str]) -> CallerIdentity:
        """
        Verify an Authorization header value of the form 'Bearer <token>'

        Raises:
            Unauthorized: missing header, wrong scheme or unknown token
        """
        if not authorization:
            raise Unauthorized()
        scheme, _, token = authorization.strip().partition(' ')
        token = token.strip()
        if scheme.lower() != 'bearer' or not token:
            raise Unauthorized()

        for known, user_id in self._tokens.items():
            if hmac.compare_digest(known.encode(), token.encode()):
                return CallerIdentity(user_id=user_id)
        raise Unauthorized()
