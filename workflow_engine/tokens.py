"""
Confirmation Token Store

Tokens authorize exactly one batch execution for the (session, operation,
filter) triple they were minted for. A token is removed on its first
execute attempt whether or not the attempt succeeds, and the oldest
tokens are evicted once the retention cap is exceeded.
"""

import logging
import secrets
import threading
from collections import OrderedDict
from typing import Optional

from .error_handling import InvalidOrExpiredToken
from .schema import BatchFilter, BatchOperation, ConfirmationToken

logger = logging.getLogger(__name__)


class TokenStore:
    """Single-use batch confirmation tokens owned by one engine instance."""

    def __init__(self, retention_cap: int = 100):
        self.retention_cap = retention_cap
        self._tokens: OrderedDict[str, ConfirmationToken] = OrderedDict()
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._tokens)

    def issue(self, session_id: str, operation: BatchOperation, batch_filter: BatchFilter,
              instance_count: int) -> ConfirmationToken:
        """Mint a token for one dry-run result."""
        token = ConfirmationToken(
            token=f"batch-{session_id[-6:]}-{instance_count}-{secrets.token_hex(4)}",
            session_id=session_id,
            operation=operation,
            filter=batch_filter,
            instance_count=instance_count,
        )
        with self._lock:
            self._tokens[token.token] = token
            while len(self._tokens) > self.retention_cap:
                evicted, _ = self._tokens.popitem(last=False)
                logger.debug(f"Evicted confirmation token {evicted}")
        return token

    def peek(self, token: str) -> Optional[ConfirmationToken]:
        with self._lock:
            return self._tokens.get(token)

    def consume(self, token: str, session_id: str, operation: BatchOperation,
                batch_filter: Optional[BatchFilter] = None) -> ConfirmationToken:
        """
        Remove a token and check it matches the request.

        A filter of None means "the filter the token was issued for".

        Raises:
            InvalidOrExpiredToken: If the token is unknown, already used,
                evicted, or bound to a different session, operation or filter
        """
        with self._lock:
            issued = self._tokens.pop(token, None)

        if issued is None:
            raise InvalidOrExpiredToken(
                f"Confirmation token {token} is invalid, expired or already used. "
                f"Run the batch operation again with dry_run=true.",
                token=token,
            )
        if issued.session_id != session_id:
            raise InvalidOrExpiredToken(
                f"Confirmation token {token} was issued for another session",
                token=token,
                session_id=session_id,
            )
        if issued.operation != operation:
            raise InvalidOrExpiredToken(
                f"Confirmation token {token} was issued for '{issued.operation.value}', "
                f"not '{operation.value}'",
                token=token,
                field="operation",
            )
        if batch_filter is not None and batch_filter.snapshot() != issued.filter.snapshot():
            raise InvalidOrExpiredToken(
                f"Confirmation token {token} was issued for a different filter",
                token=token,
                field="filter",
                issued_filter=issued.filter.snapshot(),
            )
        return issued
