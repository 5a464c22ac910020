import logging
from threading import Lock
from typing import Any, Dict, Iterator, List, Optional

logger = logging.getLogger(__name__)

# FCM rejects multicast messages addressed to more than 500 devices.
MULTICAST_LIMIT = 500


def _chunks(tokens: List[str], size: int) -> Iterator[List[str]]:
    for start in range(0, len(tokens), size):
        yield tokens[start : start + size]


class PushSender:
    """Delivers marketplace notifications to registered devices through FCM.

    The Firebase app is created on first use; without a credentials file the
    sender stays disabled and every send is a no-op.
    """

    def __init__(self, credentials_path: str = "") -> None:
        self._credentials_path = credentials_path.strip()
        self._lock = Lock()
        self._ready = False
        self._messaging: Optional[Any] = None
        self._stale_errors: tuple = ()

    @property
    def enabled(self) -> bool:
        self._setup()
        return self._messaging is not None

    def _setup(self) -> None:
        if self._ready:
            return
        with self._lock:
            if self._ready:
                return
            self._ready = True
            if not self._credentials_path:
                logger.info("Push delivery off: FIREBASE_CREDENTIALS_PATH not set")
                return
            import firebase_admin
            from firebase_admin import credentials, exceptions, messaging

            try:
                if not firebase_admin._apps:  # pylint: disable=protected-access
                    firebase_admin.initialize_app(credentials.Certificate(self._credentials_path))
            except (ValueError, OSError):
                logger.exception("Push delivery off: could not load %s", self._credentials_path)
                return
            self._messaging = messaging
            self._stale_errors = (
                messaging.UnregisteredError,
                messaging.SenderIdMismatchError,
                exceptions.InvalidArgumentError,
            )
            logger.info("Push delivery on")

    def send_notification(
        self,
        tokens: List[str],
        title: str,
        body: str,
        data: Dict[str, str],
    ) -> List[str]:
        """Push to every device and return the tokens FCM says are dead."""
        self._setup()
        if self._messaging is None or not tokens:
            return []
        payload = {key: str(value) for key, value in data.items()}
        stale: List[str] = []
        for batch in _chunks(tokens, MULTICAST_LIMIT):
            message = self._messaging.MulticastMessage(
                notification=self._messaging.Notification(title=title, body=body),
                tokens=batch,
                data=payload,
            )
            try:
                result = self._messaging.send_each_for_multicast(message)
            except Exception:
                logger.exception("Push batch of %d devices failed", len(batch))
                continue
            stale.extend(
                token
                for token, response in zip(batch, result.responses)
                if not response.success and isinstance(response.exception, self._stale_errors)
            )
        if stale:
            logger.info("Dropping %d stale device tokens", len(stale))
        return stale
