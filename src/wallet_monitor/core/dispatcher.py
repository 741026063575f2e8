"""Single-slot delivery of transaction records."""

import inspect
import logging
from typing import Any, Awaitable, Callable, Dict, Optional, Union

from .models import TransactionRecord

logger = logging.getLogger(__name__)

RecordCallback = Callable[[TransactionRecord], Union[None, Awaitable[None]]]


class EventDispatcher:
    """
    Delivers records to one external callback.

    Setting a callback replaces the previous one. Callback failures are
    logged and counted; they never propagate to the caller of dispatch().
    """

    def __init__(self, callback: Optional[RecordCallback] = None):
        self._callback = callback
        self.stats = {
            'dispatched': 0,
            'delivered': 0,
            'callback_errors': 0,
            'no_callback': 0
        }

    @property
    def callback(self) -> Optional[RecordCallback]:
        return self._callback

    def set_callback(self, callback: Optional[RecordCallback]):
        if self._callback is not None and callback is not None:
            logger.info("Replacing transaction callback")
        self._callback = callback

    async def dispatch(self, record: TransactionRecord) -> bool:
        """Deliver one record. Returns True if the callback completed."""
        self.stats['dispatched'] += 1
        callback = self._callback

        if callback is None:
            self.stats['no_callback'] += 1
            logger.debug(f"No callback registered, dropping record {record.signature[:16]}...")
            return False

        try:
            result = callback(record)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            self.stats['callback_errors'] += 1
            logger.error(
                f"Transaction callback failed for {record.address[:8]}... "
                f"({record.signature[:16]}...): {e}",
                exc_info=True
            )
            return False

        self.stats['delivered'] += 1
        return True

    def get_stats(self) -> Dict[str, Any]:
        return dict(self.stats)
