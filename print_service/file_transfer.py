"""
file_transfer.py — File Transfer Broker

Issues short-lived, single-use capability tokens so clients can move file
bytes directly to and from the object-storage worker. The broker never sees
file content and no storage credential ever reaches a client.

Token format:
    base64url(JSON claims) "." hex(HMAC-SHA256(secret, base64url part))

Claims:
    jti    unique token id, recorded on redemption (single use)
    op     "upload" or "download"
    sub    principal the token was issued to
    scope  key prefix (upload) or exact storage key (download)
    exp    expiry, unix seconds

The signing secret is shared with the storage worker only. The worker calls
`redeem()` before touching any bytes.
"""

import base64
import hashlib
import hmac
import json
import logging
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from urllib.parse import quote

from sqlalchemy import insert
from sqlalchemy.exc import IntegrityError

from . import config
from .auth import is_party_to, require_customer
from .db import RedeemedGrant, utcnow
from .errors import Forbidden, ValidationError
from .models import TransferGrant
from .orders import find_order_by_storage_key, upload_prefix

log = logging.getLogger(__name__)

UPLOAD = "upload"
DOWNLOAD = "download"
OPERATIONS = (UPLOAD, DOWNLOAD)


@dataclass(frozen=True)
class GrantClaims:
    jti: str
    op: str
    sub: str
    scope: str
    exp: int


def _b64encode(raw):
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def _b64decode(text):
    return base64.urlsafe_b64decode(text + "=" * (-len(text) % 4))


class FileTransferBroker:
    """
    Issues and redeems capability tokens for the storage worker.

    Args:
        secret (str): HMAC key shared with the storage worker.
        worker_url (str): Base URL of the storage worker.
        ttl_seconds (int): Token lifetime.
        clock (callable): Returns unix time; injectable for tests.
    """

    def __init__(self, secret=None, worker_url=None, ttl_seconds=None, clock=time.time):
        self.secret = (secret or config.STORAGE_TOKEN_SECRET).encode()
        self.worker_url = (worker_url or config.STORAGE_WORKER_URL).rstrip("/")
        self.ttl_seconds = ttl_seconds or config.GRANT_TTL_SECONDS
        self.clock = clock

    def _sign(self, body):
        return hmac.new(self.secret, body.encode(), hashlib.sha256).hexdigest()

    def _issue(self, op, subject, scope, target_uri):
        exp = int(self.clock()) + self.ttl_seconds
        claims = {"jti": uuid.uuid4().hex, "op": op, "sub": subject, "scope": scope, "exp": exp}
        body = _b64encode(json.dumps(claims, separators=(",", ":"), sort_keys=True).encode())
        return TransferGrant(
            token=f"{body}.{self._sign(body)}",
            target_uri=target_uri,
            expires_at=datetime.fromtimestamp(exp, tz=timezone.utc),
        )

    def request_upload_grant(self, principal):
        """
        Grants one upload into the customer's key prefix.

        Raises:
            Forbidden: Principal is not a customer.
        """
        require_customer(principal)
        grant = self._issue(UPLOAD, principal.user_id, upload_prefix(principal.user_id), f"{self.worker_url}/upload")
        log.info(f"Upload grant issued to customer {principal.user_id}.")
        return grant

    def request_download_grant(self, session, principal, storage_key):
        """
        Grants one download of `storage_key`.

        Authorization is decided by the order that references the key: only
        its customer and its owning shop may download. Unreferenced keys are
        refused the same way so their existence is not revealed.

        Raises:
            Forbidden: Principal is not a party to the referencing order.
        """
        if not storage_key or not storage_key.strip():
            raise ValidationError("storage_key is required")
        order = find_order_by_storage_key(session, storage_key)
        if order is None or not is_party_to(principal, order):
            log.warning(f"Download grant refused for {principal.role.value} {principal.user_id} on key {storage_key}.")
            raise Forbidden("Not allowed to download this file")
        grant = self._issue(
            DOWNLOAD, principal.user_id, storage_key,
            f"{self.worker_url}/download/{quote(storage_key, safe='/')}",
        )
        log.info(f"[Order: {order.id}] Download grant issued to {principal.role.value} {principal.user_id}.")
        return grant

    def decode(self, token):
        """
        Checks signature and expiry and returns the claims. Does not consume the token.

        Raises:
            Forbidden: Malformed, tampered or expired token.
        """
        try:
            body, signature = token.split(".", 1)
        except (AttributeError, ValueError):
            raise Forbidden("Malformed transfer token")
        if not hmac.compare_digest(self._sign(body).encode(), signature.encode()):
            raise Forbidden("Invalid transfer token signature")
        try:
            claims = GrantClaims(**json.loads(_b64decode(body)))
        except (ValueError, TypeError):
            raise Forbidden("Malformed transfer token")
        if not isinstance(claims.exp, int) or claims.exp <= int(self.clock()):
            raise Forbidden("Transfer token expired")
        return claims

    def redeem(self, session, token, operation, storage_key=None):
        """
        Consumes a token for one storage operation. Called by the storage worker.

        Args:
            session: SQLAlchemy session.
            token (str): The bearer token presented by the client.
            operation (str): "upload" or "download".
            storage_key (str): Key being read (download) or written (upload).

        Returns:
            GrantClaims: The claims of the consumed token.

        Raises:
            Forbidden: Invalid, expired, wrong operation, out of scope, or already used.
        """
        if operation not in OPERATIONS:
            raise ValidationError(f"Unknown operation: {operation}")
        claims = self.decode(token)
        if claims.op != operation:
            raise Forbidden(f"Token is not valid for {operation}")
        if storage_key is not None:
            in_scope = storage_key.startswith(claims.scope) if operation == UPLOAD else storage_key == claims.scope
            if not in_scope:
                raise Forbidden("Token does not cover this storage key")

        try:
            session.execute(insert(RedeemedGrant).values(jti=claims.jti, operation=operation, redeemed_at=utcnow()))
            session.commit()
        except IntegrityError:
            session.rollback()
            log.warning(f"Replayed {operation} token {claims.jti} from {claims.sub} refused.")
            raise Forbidden("Transfer token already used")
        log.info(f"{operation.capitalize()} token {claims.jti} redeemed for {claims.sub}.")
        return claims
