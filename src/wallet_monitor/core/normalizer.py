"""Helius push frame normalization into transaction records."""

import hashlib
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional, Union

from .errors import MalformedPayload, MetadataUnavailable
from .metadata_cache import MetadataCache, MetadataFetcher
from .models import WRAPPED_SOL_MINT, Direction, TokenMetadata, TransactionRecord
from .registry import AddressRegistry
from ..utils.deduplication import SignatureDeduplicator

logger = logging.getLogger(__name__)

LAMPORTS_PER_SOL = Decimal(10 ** 9)

UNKNOWN_TOKEN = "Unknown Token"

SIDE_MARKERS = {
    Direction.BUY: "🟢 ",
    Direction.SELL: "🔴 ",
}


@dataclass
class TokenChange:
    """Net balance change of one mint for one owner."""
    mint: str
    amount: Decimal
    decimals: Optional[int] = None


@dataclass
class ParsedTransaction:
    """Provider-independent view of one pushed transaction."""
    signature: str
    timestamp: Optional[float]
    addresses: List[str]
    token_changes: Dict[str, Dict[str, TokenChange]] = field(default_factory=dict)
    native_changes: Dict[str, int] = field(default_factory=dict)
    raw: Any = None

    def add_token_change(self, owner: str, mint: str, amount: Decimal, decimals: Optional[int]):
        changes = self.token_changes.setdefault(owner, {})
        existing = changes.get(mint)
        if existing is None:
            changes[mint] = TokenChange(mint=mint, amount=amount, decimals=decimals)
        else:
            existing.amount += amount
            if existing.decimals is None:
                existing.decimals = decimals
        self.reference(owner)

    def add_native_change(self, owner: str, lamports: int):
        self.native_changes[owner] = self.native_changes.get(owner, 0) + lamports
        self.reference(owner)

    def reference(self, address: str):
        if address and address not in self.addresses:
            self.addresses.append(address)


class MessageNormalizer:
    """
    Turns raw provider frames into TransactionRecords for tracked wallets.

    Accepts Helius ``transactionNotification`` frames (RPC transaction with
    pre/post balances) and enhanced transactions (``accountData``,
    ``tokenTransfers``, ``nativeTransfers``), singly or as a list.
    """

    def __init__(
        self,
        registry: AddressRegistry,
        metadata_cache: MetadataCache,
        deduplicator: SignatureDeduplicator,
        metadata_fetcher: Optional[MetadataFetcher] = None
    ):
        self.registry = registry
        self.metadata_cache = metadata_cache
        self.deduplicator = deduplicator
        self.metadata_fetcher = metadata_fetcher

        self.stats = {
            'frames': 0,
            'malformed': 0,
            'ignored_control': 0,
            'untracked_discarded': 0,
            'duplicates': 0,
            'records': 0,
            'metadata_fallbacks': 0,
            'build_errors': 0
        }

    async def normalize(self, frame: Union[str, bytes, dict, list]) -> List[TransactionRecord]:
        """Normalize one frame. Malformed frames are logged and yield no records."""
        self.stats['frames'] += 1

        try:
            transactions = self.parse_frame(frame)
        except MalformedPayload as e:
            self.stats['malformed'] += 1
            logger.warning(f"Dropping malformed frame: {e}")
            logger.debug(f"Raw frame: {str(frame)[:200]}...")
            return []

        records: List[TransactionRecord] = []
        for transaction in transactions:
            try:
                records.extend(await self.build_records(transaction))
            except Exception as e:
                self.stats['build_errors'] += 1
                logger.error(f"Failed to build records for {transaction.signature}: {e}", exc_info=True)

        return records

    def parse_frame(self, frame: Union[str, bytes, dict, list]) -> List[ParsedTransaction]:
        """
        Parse a frame into transactions.

        Raises:
            MalformedPayload: If the frame is not JSON or has no recognizable shape
        """
        if isinstance(frame, (bytes, bytearray)):
            try:
                frame = frame.decode('utf-8')
            except UnicodeDecodeError as e:
                raise MalformedPayload(f"frame is not UTF-8: {e}") from e

        if isinstance(frame, str):
            try:
                data = json.loads(frame)
            except json.JSONDecodeError as e:
                raise MalformedPayload(f"invalid JSON: {e}") from e
        else:
            data = frame

        items = self._unwrap(data)

        transactions = []
        for item in items:
            try:
                parsed = self._parse_transaction(item)
            except (TypeError, ValueError, KeyError, AttributeError, InvalidOperation) as e:
                raise MalformedPayload(f"unparseable transaction: {e}") from e
            if parsed is not None:
                transactions.append(parsed)
        return transactions

    def _unwrap(self, data: Any) -> List[Dict[str, Any]]:
        """Return the transaction objects carried by a frame."""
        if isinstance(data, list):
            items = data
        elif isinstance(data, dict):
            if 'params' in data:
                params = data.get('params')
                result = params.get('result') if isinstance(params, dict) else None
                if not isinstance(result, dict):
                    raise MalformedPayload("notification without a result object")
                items = [result]
            elif 'error' in data:
                logger.warning(f"Provider returned an error frame: {data.get('error')}")
                self.stats['ignored_control'] += 1
                return []
            elif 'result' in data and 'id' in data:
                # Subscription acknowledgement
                self.stats['ignored_control'] += 1
                return []
            else:
                items = [data]
        else:
            raise MalformedPayload(f"unexpected frame type {type(data).__name__}")

        for item in items:
            if not isinstance(item, dict):
                raise MalformedPayload(f"transaction entry is {type(item).__name__}, expected object")
        return items

    def _parse_transaction(self, item: Dict[str, Any]) -> Optional[ParsedTransaction]:
        if 'transaction' in item or 'meta' in item:
            return self._parse_rpc_transaction(item)
        if any(key in item for key in ('accountData', 'tokenTransfers', 'nativeTransfers')):
            return self._parse_enhanced_transaction(item)
        raise MalformedPayload(f"unrecognized payload keys: {sorted(item.keys())[:10]}")

    def _parse_rpc_transaction(self, item: Dict[str, Any]) -> Optional[ParsedTransaction]:
        """Parse an RPC-encoded transaction with meta balances."""
        wrapper = item.get('transaction')
        if isinstance(wrapper, dict) and 'meta' in wrapper:
            meta = wrapper.get('meta') or {}
            inner = wrapper.get('transaction')
        else:
            meta = item.get('meta') or {}
            inner = wrapper

        if meta.get('err'):
            logger.debug(f"Skipping failed transaction {item.get('signature')}")
            return None

        account_keys: List[str] = []
        signatures: List[str] = []
        if isinstance(inner, dict):
            message = inner.get('message') or {}
            for key in message.get('accountKeys') or []:
                account_keys.append(key.get('pubkey') if isinstance(key, dict) else key)
            signatures = inner.get('signatures') or []

        loaded = meta.get('loadedAddresses') or {}
        account_keys.extend(loaded.get('writable') or [])
        account_keys.extend(loaded.get('readonly') or [])

        signature = item.get('signature') or (signatures[0] if signatures else None)
        parsed = ParsedTransaction(
            signature=signature or self._fallback_signature(item),
            timestamp=item.get('blockTime') or item.get('timestamp'),
            addresses=[],
            raw=item
        )

        pre_balances = meta.get('preBalances') or []
        post_balances = meta.get('postBalances') or []
        for index, (pre, post) in enumerate(zip(pre_balances, post_balances)):
            if index < len(account_keys) and account_keys[index]:
                parsed.add_native_change(account_keys[index], int(post) - int(pre))

        # Token balances are keyed by token account index; owners may repeat
        balances: Dict[int, Dict[str, Any]] = {}
        for side, entries in (('pre', meta.get('preTokenBalances') or []), ('post', meta.get('postTokenBalances') or [])):
            for entry in entries:
                slot = balances.setdefault(int(entry['accountIndex']), {'pre': 0, 'post': 0})
                ui_amount = entry.get('uiTokenAmount') or {}
                slot[side] = int(ui_amount.get('amount') or 0)
                slot['decimals'] = int(ui_amount.get('decimals') or 0)
                slot['mint'] = entry['mint']
                slot['owner'] = entry.get('owner')

        for slot in balances.values():
            if not slot.get('owner'):
                continue
            decimals = slot['decimals']
            delta = Decimal(slot['post'] - slot['pre']) / (Decimal(10) ** decimals)
            parsed.add_token_change(slot['owner'], slot['mint'], delta, decimals)

        for address in account_keys:
            parsed.reference(address)

        return parsed

    def _parse_enhanced_transaction(self, item: Dict[str, Any]) -> ParsedTransaction:
        """Parse a Helius enhanced transaction."""
        parsed = ParsedTransaction(
            signature=item.get('signature') or self._fallback_signature(item),
            timestamp=item.get('timestamp'),
            addresses=[],
            raw=item
        )

        account_data = item.get('accountData') or []
        saw_token_changes = False
        for account in account_data:
            native_change = account.get('nativeBalanceChange')
            if account.get('account') and native_change:
                parsed.add_native_change(account['account'], int(native_change))

            for change in account.get('tokenBalanceChanges') or []:
                raw_amount = change.get('rawTokenAmount') or {}
                decimals = int(raw_amount.get('decimals') or 0)
                amount = Decimal(str(raw_amount.get('tokenAmount') or 0)) / (Decimal(10) ** decimals)
                parsed.add_token_change(change['userAccount'], change['mint'], amount, decimals)
                saw_token_changes = True

        if not saw_token_changes:
            for transfer in item.get('tokenTransfers') or []:
                amount = Decimal(str(transfer.get('tokenAmount') or 0))
                mint = transfer['mint']
                if transfer.get('fromUserAccount'):
                    parsed.add_token_change(transfer['fromUserAccount'], mint, -amount, None)
                if transfer.get('toUserAccount'):
                    parsed.add_token_change(transfer['toUserAccount'], mint, amount, None)

        if not account_data:
            for transfer in item.get('nativeTransfers') or []:
                lamports = int(transfer.get('amount') or 0)
                if transfer.get('fromUserAccount'):
                    parsed.add_native_change(transfer['fromUserAccount'], -lamports)
                if transfer.get('toUserAccount'):
                    parsed.add_native_change(transfer['toUserAccount'], lamports)

        for account in account_data:
            parsed.reference(account.get('account'))
        parsed.reference(item.get('feePayer'))

        return parsed

    def _fallback_signature(self, item: Dict[str, Any]) -> str:
        digest = hashlib.sha1(json.dumps(item, sort_keys=True, default=str).encode('utf-8')).hexdigest()
        logger.warning(f"Transaction without signature, using fallback marker unknown-{digest[:16]}")
        return f"unknown-{digest[:16]}"

    async def build_records(self, transaction: ParsedTransaction) -> List[TransactionRecord]:
        """Build one record per tracked wallet referenced by the transaction."""
        tracked = self.registry.snapshot()
        relevant = [address for address in transaction.addresses if address in tracked]

        if not relevant:
            self.stats['untracked_discarded'] += 1
            logger.debug(f"Discarding {transaction.signature[:16]}...: no tracked wallet involved")
            return []

        records = []
        for address in relevant:
            if not self.deduplicator.is_unique(transaction.signature, address):
                self.stats['duplicates'] += 1
                continue

            try:
                record = await self._build_record(transaction, address)
            except Exception as e:
                # Unmark so a redelivery of the signature is processed again
                self.deduplicator.forget(transaction.signature, address)
                self.stats['build_errors'] += 1
                logger.error(
                    f"Failed to build record for {address[:8]}... ({transaction.signature[:16]}...): {e}",
                    exc_info=True
                )
                continue

            records.append(record)
            self.stats['records'] += 1

        return records

    async def _build_record(self, transaction: ParsedTransaction, address: str) -> TransactionRecord:
        token_changes = {
            mint: change
            for mint, change in transaction.token_changes.get(address, {}).items()
            if change.amount != 0
        }
        wrapped_sol = token_changes.pop(WRAPPED_SOL_MINT, None)

        sol_change = Decimal(transaction.native_changes.get(address, 0)) / LAMPORTS_PER_SOL
        if wrapped_sol is not None:
            sol_change += wrapped_sol.amount

        if token_changes:
            change = max(token_changes.values(), key=lambda c: abs(c.amount))
            direction = Direction.BUY if change.amount > 0 else Direction.SELL
            metadata = await self._resolve_metadata(change.mint)
            symbol = metadata.symbol if metadata else UNKNOWN_TOKEN
            amount_display = format_trade_amount(direction, sol_change, change.amount, symbol)
            mint = change.mint
        else:
            direction = Direction.UNKNOWN
            symbol = "SOL" if sol_change else UNKNOWN_TOKEN
            amount_display = format_sol_change(sol_change)
            mint = None

        return TransactionRecord(
            address=address,
            direction=direction,
            token_symbol=symbol,
            amount_display=amount_display,
            signature=transaction.signature,
            observed_at=_to_datetime(transaction.timestamp),
            token_mint=mint,
            raw=transaction.raw
        )

    async def _resolve_metadata(self, mint: str) -> Optional[TokenMetadata]:
        if self.metadata_fetcher is None:
            return self.metadata_cache.get(mint)

        try:
            return await self.metadata_cache.get_or_fetch(mint, self.metadata_fetcher)
        except MetadataUnavailable as e:
            self.stats['metadata_fallbacks'] += 1
            logger.warning(f"Using placeholder symbol for {mint[:8]}...: {e}")
            return None

    def get_stats(self) -> Dict[str, Any]:
        return dict(self.stats)


def format_trade_amount(direction: Direction, sol_change: Decimal, token_amount: Decimal, symbol: str) -> str:
    """Trade size with side marker, in SOL when a SOL leg exists."""
    marker = SIDE_MARKERS.get(direction, "")
    if sol_change:
        return f"{marker}{abs(sol_change):,.4f} SOL"
    return f"{marker}{abs(token_amount):,.4f} {symbol}"


def format_sol_change(sol_change: Decimal) -> str:
    if not sol_change:
        return "0 SOL"
    return f"{sol_change:+,.4f} SOL"


def _to_datetime(timestamp: Optional[float]) -> datetime:
    if not timestamp:
        return datetime.now(timezone.utc)
    seconds = float(timestamp)
    # Millisecond timestamps
    if seconds > 1e11:
        seconds /= 1000.0
    return datetime.fromtimestamp(seconds, tz=timezone.utc)
