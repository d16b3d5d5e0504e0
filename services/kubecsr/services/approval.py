"""Wait for the authority to sign an approved request.

Fixed-interval polling with a bounded number of attempts. The default
budget is five reads 100 ms apart.
"""

import asyncio
from collections.abc import Awaitable, Callable

from kubecsr.errors import ApprovalError, CertificateTimeoutError
from kubecsr.logging_config import get_logger
from kubecsr.services.authority import AuthorityClient, AuthorityRecord

logger = get_logger(__name__)

DEFAULT_INTERVAL_SECONDS = 0.1
DEFAULT_MAX_ATTEMPTS = 5
DEFAULT_CALL_TIMEOUT_SECONDS = 10.0


class ApprovalWaiter:
    """Polls ``AuthorityClient.get`` until a certificate shows up."""

    def __init__(
        self,
        interval_seconds: float = DEFAULT_INTERVAL_SECONDS,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        call_timeout_seconds: float = DEFAULT_CALL_TIMEOUT_SECONDS,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.interval_seconds = interval_seconds
        self.max_attempts = max_attempts
        self.call_timeout_seconds = call_timeout_seconds
        self._sleep = sleep

    async def wait_for_certificate(self, identity: str, client: AuthorityClient) -> bytes:
        """Return the issued certificate for ``identity``.

        Raises:
            ApprovalError: the request was denied or failed by the signer.
            CertificateTimeoutError: no certificate after ``max_attempts`` reads.
        """
        for attempt in range(1, self.max_attempts + 1):
            record = await self._read(identity, client)

            if record is not None:
                if record.certificate:
                    logger.info("Certificate issued", identity=identity, attempt=attempt)
                    return record.certificate
                if record.denied:
                    logger.warning(
                        "Certificate signing request denied",
                        identity=identity,
                        conditions=record.conditions,
                    )
                    raise ApprovalError(
                        f"Certificate signing request '{identity}' was denied or failed"
                    )

            logger.debug("Certificate not ready", identity=identity, attempt=attempt)
            if attempt < self.max_attempts:
                await self._sleep(self.interval_seconds)

        logger.warning(
            "Timed out waiting for certificate",
            identity=identity,
            attempts=self.max_attempts,
        )
        raise CertificateTimeoutError(
            f"Certificate for '{identity}' was not issued after {self.max_attempts} attempts"
        )

    async def _read(self, identity: str, client: AuthorityClient) -> AuthorityRecord | None:
        """One status read; a read that exceeds the call timeout counts as not ready."""
        try:
            return await asyncio.wait_for(client.get(identity), self.call_timeout_seconds)
        except TimeoutError:
            logger.warning("Certificate status read timed out", identity=identity)
            return None
