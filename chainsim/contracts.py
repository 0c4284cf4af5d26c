"""
chainsim.contracts: native (Python) contracts executed by the simulated controller.

A contract is a `Contract` subclass deployed on an account. Methods decorated
with `@action("name")` handle actions addressed to that account; methods
decorated with `@on_notify("code", "name")` handle notifications delivered via
`require_recipient`. Handlers receive an `ApplyContext`:

    class Hello(Contract):
        @action("hi")
        def hi(self, ctx: ApplyContext) -> None:
            user = ctx.reader().name()
            ctx.require_auth(user)
            ctx.check(user != ctx.receiver, "cannot greet yourself")
            ctx.print("hello, ", name_to_string(user))

Plugins are named as "account=module:Class" (see `load_contract_spec`).

Failures raise `chainsim.errors.ChainException` subclasses; the controller
turns them into trace fields, they never reach the guest as host faults.
"""

from __future__ import annotations

import importlib
from typing import TYPE_CHECKING, Any, Callable, Dict, Iterator, List, Optional, Tuple, Union

from hostcore.errors import ConfigError

from .errors import (
    AccountNameExists,
    ActionValidateException,
    EosioAssertCode,
    EosioAssertMessage,
    MissingAuth,
    TableAccessViolation,
    UnknownAccount,
    UnknownAction,
    UnknownPermission,
)
from .names import NameLike, as_name, name_to_string
from .state_db import SECONDARY_KINDS, SecondaryKey, SecondaryKind, TableId
from .types import Action, Authority, GeneratedTransaction, PermissionLevel, Transaction
from .wire import Reader, Writer

if TYPE_CHECKING:  # pragma: no cover
    from .controller import Controller, TransactionContext

Handler = Callable[["Contract", "ApplyContext"], None]

MAX_INLINE_DEPTH = 4


# ---------------------------------------------------------------------------
# Apply context
# ---------------------------------------------------------------------------


class ApplyContext:
    """Execution scope of one action delivered to one receiver."""

    def __init__(
        self,
        control: "Controller",
        trx: "TransactionContext",
        receiver: int,
        act: Action,
        action_ordinal: int,
        *,
        depth: int = 0,
        context_free: bool = False,
    ) -> None:
        self.control = control
        self.trx = trx
        self.receiver = receiver
        self.act = act
        self.action_ordinal = action_ordinal
        self.depth = depth
        self.context_free = context_free
        self.notified: List[int] = [receiver]
        self.inline_actions: List[Action] = []
        self._console: List[str] = []

    # ---- action data ----

    @property
    def code(self) -> int:
        return self.act.account

    @property
    def data(self) -> bytes:
        return self.act.data

    def reader(self) -> Reader:
        return Reader(self.act.data)

    @property
    def current_time(self) -> int:
        """Pending block time in microseconds."""
        return self.control.pending_block_time

    # ---- console ----

    def print(self, *parts: Any) -> None:
        self._console.append("".join(str(p) for p in parts))

    @property
    def console(self) -> str:
        return "".join(self._console)

    # ---- assertions ----

    def check(self, condition: bool, message: str) -> None:
        if not condition:
            raise EosioAssertMessage(f"assertion failure with message: {message}")

    def check_code(self, condition: bool, error_code: int) -> None:
        if not condition:
            raise EosioAssertCode(
                f"assertion failure with error code: {error_code}", error_code=error_code
            )

    # ---- authorization ----

    def has_auth(self, account: NameLike) -> bool:
        actor = as_name(account)
        return any(a.actor == actor for a in self.act.authorization)

    def require_auth(self, account: NameLike, permission: Optional[NameLike] = None) -> None:
        actor = as_name(account)
        perm = None if permission is None else as_name(permission)
        for level in self.act.authorization:
            if level.actor == actor and (perm is None or level.permission == perm):
                return
        who = name_to_string(actor) if perm is None else f"{name_to_string(actor)}@{name_to_string(perm)}"
        raise MissingAuth(f"missing authority of {who}")

    def is_account(self, account: NameLike) -> bool:
        return as_name(account) in self.control.db.accounts

    def require_recipient(self, account: NameLike) -> None:
        recipient = as_name(account)
        if not self.is_account(recipient):
            raise UnknownAccount(f"recipient '{name_to_string(recipient)}' does not exist")
        if recipient not in self.notified:
            self.notified.append(recipient)

    # ---- primary tables ----

    def _tid(self, scope: NameLike, table: NameLike, code: Optional[NameLike] = None) -> TableId:
        return (self.receiver if code is None else as_name(code), as_name(scope), as_name(table))

    def _payer(self, payer: Optional[NameLike]) -> int:
        if self.context_free:
            raise TableAccessViolation("context-free actions cannot write to tables")
        if payer is None:
            return self.receiver
        who = as_name(payer)
        if who not in self.control.db.accounts:
            raise UnknownAccount(f"payer '{name_to_string(who)}' does not exist")
        return who

    def db_store(
        self, scope: NameLike, table: NameLike, primary: int, value: bytes, payer: Optional[NameLike] = None
    ) -> None:
        who = self._payer(payer)
        tid = self._tid(scope, table)
        existing = self.control.db.find_table(tid)
        if existing is not None and existing.get(primary) is not None:
            raise ActionValidateException(f"db_store_i64: primary key {primary} already exists")
        self.control.db.store_row(tid, primary, who, value)

    def db_update(
        self, scope: NameLike, table: NameLike, primary: int, value: bytes, payer: Optional[NameLike] = None
    ) -> None:
        new_payer = self._payer(payer)
        tid = self._tid(scope, table)
        table_obj = self.control.db.find_table(tid)
        row = None if table_obj is None else table_obj.get(primary)
        self.check(row is not None, "db_update_i64: row does not exist")
        who = row.payer if payer is None else new_payer  # type: ignore[union-attr]
        self.control.db.update_row(tid, primary, who, value)

    def db_remove(self, scope: NameLike, table: NameLike, primary: int) -> None:
        if self.context_free:
            raise TableAccessViolation("context-free actions cannot write to tables")
        tid = self._tid(scope, table)
        table_obj = self.control.db.find_table(tid)
        self.check(table_obj is not None and table_obj.get(primary) is not None,
                   "db_remove_i64: row does not exist")
        self.control.db.remove_row(tid, primary)

    def db_get(self, code: NameLike, scope: NameLike, table: NameLike, primary: int) -> Optional[bytes]:
        table_obj = self.control.db.find_table(self._tid(scope, table, code))
        row = None if table_obj is None else table_obj.get(primary)
        return None if row is None else row.value

    def db_rows(self, code: NameLike, scope: NameLike, table: NameLike) -> Iterator[Tuple[int, bytes]]:
        table_obj = self.control.db.find_table(self._tid(scope, table, code))
        if table_obj is None:
            return
        for key in list(table_obj.keys):
            yield key, table_obj.rows[key].value

    # ---- secondary indices ----

    @staticmethod
    def _kind(kind: Union[str, SecondaryKind]) -> SecondaryKind:
        return SECONDARY_KINDS[kind] if isinstance(kind, str) else kind

    def idx_store(
        self,
        kind: Union[str, SecondaryKind],
        scope: NameLike,
        table: NameLike,
        primary: int,
        key: SecondaryKey,
        payer: Optional[NameLike] = None,
    ) -> None:
        k = self._kind(kind)
        who = self._payer(payer)
        tid = self._tid(scope, table)
        stable = self.control.db.find_secondary_table(k, tid)
        if stable is not None and primary in stable.by_primary:
            raise ActionValidateException(f"db_{k.name}_store: primary key {primary} already indexed")
        try:
            self.control.db.store_secondary(k, tid, primary, key, who)
        except ValueError as e:
            raise ActionValidateException(str(e)) from e

    def idx_update(
        self,
        kind: Union[str, SecondaryKind],
        scope: NameLike,
        table: NameLike,
        primary: int,
        key: SecondaryKey,
        payer: Optional[NameLike] = None,
    ) -> None:
        k = self._kind(kind)
        new_payer = self._payer(payer)
        tid = self._tid(scope, table)
        stable = self.control.db.find_secondary_table(k, tid)
        self.check(stable is not None and primary in stable.by_primary,
                   f"db_{k.name}_update: primary key not indexed")
        who = stable.by_primary[primary][1] if payer is None else new_payer  # type: ignore[union-attr]
        try:
            self.control.db.update_secondary(k, tid, primary, key, who)
        except ValueError as e:
            raise ActionValidateException(str(e)) from e

    def idx_remove(self, kind: Union[str, SecondaryKind], scope: NameLike, table: NameLike, primary: int) -> None:
        k = self._kind(kind)
        if self.context_free:
            raise TableAccessViolation("context-free actions cannot write to tables")
        tid = self._tid(scope, table)
        stable = self.control.db.find_secondary_table(k, tid)
        self.check(stable is not None and primary in stable.by_primary,
                   f"db_{k.name}_remove: primary key not indexed")
        self.control.db.remove_secondary(k, tid, primary)

    def idx_find_primary(
        self, kind: Union[str, SecondaryKind], code: NameLike, scope: NameLike, table: NameLike, primary: int
    ) -> Optional[SecondaryKey]:
        stable = self.control.db.find_secondary_table(self._kind(kind), self._tid(scope, table, code))
        return None if stable is None else stable.secondary_of(primary)

    # ---- inline & deferred ----

    def send_inline(self, act: Action) -> None:
        if self.context_free:
            raise TableAccessViolation("context-free actions cannot send inline actions")
        if self.depth + 1 >= MAX_INLINE_DEPTH:
            raise ActionValidateException("max inline action depth per transaction reached")
        if act.account not in self.control.db.accounts:
            raise UnknownAccount(f"inline action's code account '{name_to_string(act.account)}' does not exist")
        for level in act.authorization:
            if level.actor != self.receiver and level not in self.act.authorization:
                raise MissingAuth(f"inline action is not authorized by {level}")
        self.inline_actions.append(act)

    def send_deferred(
        self,
        sender_id: int,
        trx: Transaction,
        payer: Optional[NameLike] = None,
        replace_existing: bool = False,
    ) -> bytes:
        who = self._payer(payer)
        if who != self.receiver:
            self.require_auth(who)
        db = self.control.db
        existing = db.find_generated(self.receiver, sender_id)
        if existing is not None:
            if not replace_existing:
                raise ActionValidateException(
                    f"deferred transaction with the same sender_id ({sender_id}) already exists"
                )
            db.remove_generated(existing.trx_id)
        now = self.control.pending_block_time
        delay_until = now + trx.delay_sec * 1_000_000
        packed = trx.pack()
        gtrx = GeneratedTransaction(
            trx_id=trx.id(),
            sender=self.receiver,
            sender_id=sender_id,
            payer=who,
            delay_until=delay_until,
            expiration=delay_until + self.control.config.deferred_expiration_window_s * 1_000_000,
            published=now,
            packed_trx=packed,
        )
        db.schedule(gtrx)
        return gtrx.trx_id

    def cancel_deferred(self, sender_id: int) -> bool:
        existing = self.control.db.find_generated(self.receiver, sender_id)
        if existing is None:
            return False
        self.control.db.remove_generated(existing.trx_id)
        return True


# ---------------------------------------------------------------------------
# Contract base & decorators
# ---------------------------------------------------------------------------


def action(name: Optional[str] = None) -> Callable[[Handler], Handler]:
    def deco(fn: Handler) -> Handler:
        fn.__chain_action__ = name or fn.__name__  # type: ignore[attr-defined]
        return fn

    return deco


def on_notify(code: str, name: str) -> Callable[[Handler], Handler]:
    def deco(fn: Handler) -> Handler:
        fn.__chain_notify__ = (code, name)  # type: ignore[attr-defined]
        return fn

    return deco


class Contract:
    """Base class; subclasses get an action table built at class creation."""

    _actions: Dict[int, str] = {}
    _notify: Dict[Tuple[int, int], str] = {}

    def __init_subclass__(cls, **kwargs: Any) -> None:
        super().__init_subclass__(**kwargs)
        actions: Dict[int, str] = {}
        notify: Dict[Tuple[int, int], str] = {}
        for klass in reversed(cls.__mro__):
            for attr, fn in vars(klass).items():
                if hasattr(fn, "__chain_action__"):
                    actions[as_name(fn.__chain_action__)] = attr
                if hasattr(fn, "__chain_notify__"):
                    code, name = fn.__chain_notify__
                    notify[(as_name(code), as_name(name))] = attr
        cls._actions = actions
        cls._notify = notify

    def apply(self, ctx: ApplyContext) -> None:
        if ctx.receiver == ctx.code:
            attr = self._actions.get(ctx.act.name)
            if attr is None:
                raise UnknownAction(
                    f"unknown action {name_to_string(ctx.act.name)} on {name_to_string(ctx.code)}"
                )
        else:
            attr = self._notify.get((ctx.code, ctx.act.name))
            if attr is None:
                return
        getattr(self, attr)(ctx)


# ---------------------------------------------------------------------------
# System contract
# ---------------------------------------------------------------------------

OWNER = as_name("owner")
ACTIVE = as_name("active")


class SystemContract(Contract):
    """Account and permission management on the `eosio` account."""

    @action("newaccount")
    def newaccount(self, ctx: ApplyContext) -> None:
        r = ctx.reader()
        creator, name = r.name(), r.name()
        owner, active = Authority.read(r), Authority.read(r)
        r.expect_end("newaccount")
        ctx.require_auth(creator)
        if ctx.is_account(name):
            raise AccountNameExists(f"Cannot create account named {name_to_string(name)}, as that name is already taken")
        ctx.check(name != 0, "account name cannot be empty")
        _check_authority(ctx, owner)
        _check_authority(ctx, active)
        ctx.control.db.create_account(name, ctx.current_time, owner, active)

    @action("updateauth")
    def updateauth(self, ctx: ApplyContext) -> None:
        r = ctx.reader()
        account, permission, parent = r.name(), r.name(), r.name()
        auth = Authority.read(r)
        r.expect_end("updateauth")
        ctx.require_auth(account)
        acct = ctx.control.db.accounts.get(account)
        if acct is None:
            raise UnknownAccount(f"account '{name_to_string(account)}' does not exist")
        if permission == OWNER:
            ctx.check(parent == 0, "cannot change owner's parent")
        else:
            ctx.check(parent in acct.permissions, "parent permission does not exist")
            ctx.check(parent != permission, "permission cannot be its own parent")
        _check_authority(ctx, auth)
        ctx.control.db.set_permission(account, permission, parent, auth)

    @action("deleteauth")
    def deleteauth(self, ctx: ApplyContext) -> None:
        r = ctx.reader()
        account, permission = r.name(), r.name()
        r.expect_end("deleteauth")
        ctx.require_auth(account)
        ctx.check(permission not in (OWNER, ACTIVE), "cannot delete owner or active permission")
        acct = ctx.control.db.accounts.get(account)
        if acct is None or permission not in acct.permissions:
            raise UnknownPermission(f"permission {name_to_string(permission)} does not exist")
        ctx.check(
            all(p.parent != permission for p in acct.permissions.values()),
            "cannot delete a permission that has children",
        )
        ctx.control.db.delete_permission(account, permission)


def _check_authority(ctx: ApplyContext, auth: Authority) -> None:
    total = sum(k.weight for k in auth.keys) + sum(a.weight for a in auth.accounts)
    total += sum(w.weight for w in auth.waits)
    ctx.check(auth.threshold > 0 and total >= auth.threshold, "invalid authority")
    for a in auth.accounts:
        ctx.check(ctx.is_account(a.permission.actor), f"account {name_to_string(a.permission.actor)} does not exist")


def newaccount_data(creator: NameLike, name: NameLike, owner: Authority, active: Authority) -> bytes:
    w = Writer().name(creator).name(name)
    owner.write(w)
    active.write(w)
    return w.getvalue()


def newaccount_action(creator: NameLike, name: NameLike, owner: Authority, active: Authority) -> Action:
    return Action.of(
        "eosio", "newaccount", [PermissionLevel.of(creator)], newaccount_data(creator, name, owner, active)
    )


# ---------------------------------------------------------------------------
# Plugin loading
# ---------------------------------------------------------------------------


def load_contract_spec(spec: str) -> Tuple[int, Contract]:
    """Resolve "account=module:Class" to (account name, contract instance)."""
    account, sep, target = spec.partition("=")
    module_name, colon, class_name = target.partition(":")
    if not sep or not colon or not account or not module_name or not class_name:
        raise ConfigError("contract plugin must look like account=module:Class", spec=spec)
    try:
        module = importlib.import_module(module_name)
    except ImportError as e:
        raise ConfigError("cannot import contract module", spec=spec).with_cause(e) from e
    cls = getattr(module, class_name, None)
    if not isinstance(cls, type) or not issubclass(cls, Contract):
        raise ConfigError("contract plugin is not a Contract subclass", spec=spec)
    return as_name(account.strip()), cls()


__all__ = [
    "MAX_INLINE_DEPTH",
    "ApplyContext",
    "Contract",
    "SystemContract",
    "action",
    "on_notify",
    "newaccount_data",
    "newaccount_action",
    "load_contract_spec",
]
