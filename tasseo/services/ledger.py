"""
Tasseo Engine - Credit Ledger

Atomic consume/refund/balance over the two account shapes:

    UnlinkedAccount  -> *_legacy_credits RPCs, keyed by p_telegram_user_id
    LinkedAccount    -> *_linked_credits RPCs, keyed by p_account_id

Every entry point resolves the shape first (TTL-cached), then routes to
exactly one RPC surface. The store performs the conditional decrement; no
read-modify-write ever happens here.

Store contract:
    consume_*_credits(..., p_credit_type, p_amount) -> bool   (false = insufficient)
    refund_*_credits(..., p_credit_type, p_amount)  -> int    (new balance)
    get_*_credits(..., p_credit_type)               -> int
    grant_bonus_*_credits(..., p_credit_type, p_amount)
                                                    -> {granted: bool, balance: int}
"""

from __future__ import annotations

import logging
from typing import Any, Optional

from tasseo.config import Settings, get_settings
from tasseo.core.errors import (
    AccountShapeError,
    LedgerInputError,
    LedgerUnavailableError,
    is_connect_failure,
)
from tasseo.core.retry import RetryPolicy, call_with_retry
from tasseo.core.ttl_cache import TTLCache
from tasseo.models import AccountShape, CreditType, GrantResult, LinkedAccount, UnlinkedAccount
from tasseo.supabase_client import execute, get_supabase_client

logger = logging.getLogger(__name__)

LINK_TABLE = "unified_users"


def _require_positive_int(name: str, value: Any) -> int:
    # bool is an int subclass; True must not pass as 1
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise LedgerInputError(f"{name} must be a positive integer, got {value!r}")
    return value


def _require_credit_type(value: Any) -> CreditType:
    try:
        return CreditType(value)
    except ValueError as exc:
        raise LedgerInputError(f"unknown credit type {value!r}") from exc


def _scalar(data: Any, rpc_name: str) -> Any:
    """Unwrap PostgREST's list / {rpc_name: value} shapes around a result."""
    if isinstance(data, list):
        data = data[0] if data else None
    if isinstance(data, dict) and set(data) == {rpc_name}:
        data = data[rpc_name]
    return data


class CreditLedger:
    def __init__(
        self,
        client: Any = None,
        *,
        settings: Settings | None = None,
        link_cache: TTLCache[int, AccountShape] | None = None,
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        settings = settings or get_settings()
        self._client = client
        self._cache: TTLCache[int, AccountShape] = link_cache or TTLCache(
            settings.LINK_CACHE_TTL_SECONDS,
            settings.LINK_CACHE_MAX_ENTRIES,
        )
        self._retry = retry_policy or RetryPolicy.from_settings(settings)
        # consume/refund/grant are replayed only if the request never left
        self._mutation_retry = self._retry.only_when(is_connect_failure)

    @property
    def client(self) -> Any:
        if self._client is None:
            self._client = get_supabase_client()
        return self._client

    # ------------------------------------------------------------------
    # Shape resolution
    # ------------------------------------------------------------------

    async def resolve_account(self, identity: int) -> AccountShape:
        """
        Resolve which balance container an identity uses.

        Not-found is cached like a hit. A lookup error resolves to the legacy
        shape for this call only and is not cached.
        """
        identity = _require_positive_int("identity", identity)
        cached = self._cache.get(identity)
        if cached is not None:
            return cached

        try:
            response = await execute(
                self.client.table(LINK_TABLE).select("id").eq("telegram_id", identity).limit(1)
            )
        except Exception as exc:
            logger.warning(
                "account_shape_lookup_failed identity=%s error=%s; using legacy shape",
                identity,
                exc,
            )
            return UnlinkedAccount()

        rows = response.data or []
        shape: AccountShape
        if rows and rows[0].get("id"):
            shape = LinkedAccount(account_id=str(rows[0]["id"]))
        else:
            shape = UnlinkedAccount()
        self._cache.set(identity, shape)
        logger.debug("account_shape_resolved identity=%s shape=%s", identity, type(shape).__name__)
        return shape

    def invalidate(self, identity: int) -> None:
        self._cache.invalidate(identity)

    def on_accounts_linked(self, identity: int) -> None:
        """Hook for linking events: the next ledger call re-resolves the shape."""
        self.invalidate(identity)
        logger.info("account_shape_invalidated identity=%s", identity)

    def sweep_cache(self) -> int:
        return self._cache.sweep()

    # ------------------------------------------------------------------
    # Routing
    # ------------------------------------------------------------------

    @staticmethod
    def _route(action: str, account: AccountShape, identity: int) -> tuple[str, dict[str, Any]]:
        if isinstance(account, LinkedAccount):
            return f"{action}_linked_credits", {"p_account_id": account.account_id}
        if isinstance(account, UnlinkedAccount):
            return f"{action}_legacy_credits", {"p_telegram_user_id": identity}
        raise AccountShapeError(f"unhandled account shape {type(account).__name__}")

    async def _call(
        self,
        action: str,
        identity: int,
        credit_type: CreditType,
        amount: Optional[int] = None,
        *,
        mutating: bool = True,
    ) -> tuple[Any, AccountShape]:
        account = await self.resolve_account(identity)
        name, params = self._route(action, account, identity)
        params["p_credit_type"] = credit_type.value
        if amount is not None:
            params["p_amount"] = amount

        async def _run() -> Any:
            return await execute(self.client.rpc(name, params))

        try:
            response = await call_with_retry(
                self._mutation_retry if mutating else self._retry, name, _run
            )
        except Exception as exc:
            logger.error(
                "ledger_rpc_failed rpc=%s identity=%s type=%s error=%s",
                name,
                identity,
                credit_type.value,
                exc,
            )
            raise LedgerUnavailableError(f"{name} failed: {exc}") from exc
        return _scalar(response.data, name), account

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def balance(self, identity: int, credit_type: CreditType | str) -> int:
        identity = _require_positive_int("identity", identity)
        ctype = _require_credit_type(credit_type)
        value, _ = await self._call("get", identity, ctype, mutating=False)
        return int(value or 0)

    async def has_balance(
        self, identity: int, credit_type: CreditType | str, amount: int = 1
    ) -> bool:
        identity = _require_positive_int("identity", identity)
        amount = _require_positive_int("amount", amount)
        return await self.balance(identity, credit_type) >= amount

    async def consume(self, identity: int, credit_type: CreditType | str, amount: int = 1) -> bool:
        """
        Atomically decrement iff the balance covers `amount`.

        Returns False on insufficiency. Raises LedgerUnavailableError when
        the store cannot be reached, so an outage is never mistaken for an
        empty balance.
        """
        identity = _require_positive_int("identity", identity)
        amount = _require_positive_int("amount", amount)
        ctype = _require_credit_type(credit_type)
        value, account = await self._call("consume", identity, ctype, amount)
        consumed = bool(value)
        logger.info(
            "credits_consume identity=%s type=%s amount=%s shape=%s consumed=%s",
            identity,
            ctype.value,
            amount,
            type(account).__name__,
            consumed,
        )
        return consumed

    async def refund(self, identity: int, credit_type: CreditType | str, amount: int = 1) -> bool:
        identity = _require_positive_int("identity", identity)
        amount = _require_positive_int("amount", amount)
        ctype = _require_credit_type(credit_type)
        value, account = await self._call("refund", identity, ctype, amount)
        logger.info(
            "credits_refund identity=%s type=%s amount=%s shape=%s balance=%s",
            identity,
            ctype.value,
            amount,
            type(account).__name__,
            value,
        )
        return value is not None and value is not False

    async def grant_bonus(
        self,
        identity: int,
        credit_type: CreditType | str = CreditType.BASIC,
        amount: int = 1,
    ) -> GrantResult:
        """
        One-time bonus grant (onboarding reward).

        Safe to call repeatedly: the store records the grant and answers
        granted=false once it has been applied.
        """
        identity = _require_positive_int("identity", identity)
        amount = _require_positive_int("amount", amount)
        ctype = _require_credit_type(credit_type)
        try:
            value, _ = await self._call("grant_bonus", identity, ctype, amount)
        except LedgerUnavailableError as exc:
            return GrantResult(success=False, error=str(exc))

        if not isinstance(value, dict) or "granted" not in value:
            logger.error("bonus_grant_unexpected_response identity=%s data=%r", identity, value)
            return GrantResult(success=False, error="unexpected grant response")

        granted = bool(value["granted"])
        balance = value.get("balance")
        logger.info(
            "bonus_grant identity=%s type=%s granted=%s balance=%s",
            identity,
            ctype.value,
            granted,
            balance,
        )
        return GrantResult(
            success=True,
            already_granted=not granted,
            balance=int(balance) if balance is not None else None,
        )
