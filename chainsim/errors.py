"""
chainsim.errors: failures raised while *executing* simulated transactions.

These never escape the controller's `push_transaction`: the controller catches
them and records `to_trace_string()` / `error_code` in the transaction trace,
where guest test code inspects them. They carry the numeric codes and names a
production node reports so that substring checks written against real traces
keep working ("assertion failure with message: ...").
"""

from __future__ import annotations

from typing import Any, Optional

from hostcore.errors import ErrorCode, TesterError, _jsonmap


class ChainException(TesterError):
    """Base for execution failures (numeric `eos_code`, symbolic `eos_name`)."""

    eos_code: int = 3000000
    eos_name: str = "chain_exception"
    what: str = "blockchain exception"

    def __init__(self, detail: str = "", *, error_code: Optional[int] = None, **data: Any) -> None:
        super().__init__(
            code=ErrorCode.EXECUTION,
            message=detail or self.what,
            data=_jsonmap(data),
        )
        self.detail = detail
        self.error_code = error_code

    def to_trace_string(self) -> str:
        head = f"{self.eos_code} {self.eos_name}: {self.what}"
        return f"{head}\n{self.detail}" if self.detail else head


class BlockValidateException(ChainException):
    eos_code = 3030000
    eos_name = "block_validate_exception"
    what = "Block exception"


class TransactionException(ChainException):
    eos_code = 3040000
    eos_name = "transaction_exception"
    what = "Transaction exception"


class ExpiredTransaction(TransactionException):
    eos_code = 3040005
    eos_name = "expired_tx_exception"
    what = "Expired Transaction"


class TransactionExpirationTooFar(TransactionException):
    eos_code = 3040006
    eos_name = "tx_exp_too_far_exception"
    what = "Transaction Expiration Too Far"


class DuplicateTransaction(TransactionException):
    eos_code = 3040008
    eos_name = "tx_duplicate"
    what = "Duplicate transaction"


class NoActions(TransactionException):
    eos_code = 3040011
    eos_name = "tx_no_action"
    what = "Transaction should have at least one normal action"


class ActionValidateException(ChainException):
    eos_code = 3050000
    eos_name = "action_validate_exception"
    what = "Action validate exception"


class AccountNameExists(ActionValidateException):
    eos_code = 3050001
    eos_name = "account_name_exists_exception"
    what = "Account name already exists"


class InvalidActionArgs(ActionValidateException):
    eos_code = 3050002
    eos_name = "invalid_action_args_exception"
    what = "Invalid Action Arguments"


class EosioAssertMessage(ActionValidateException):
    eos_code = 3050003
    eos_name = "eosio_assert_message_exception"
    what = "eosio_assert_message assertion failure"


class EosioAssertCode(ActionValidateException):
    eos_code = 3050004
    eos_name = "eosio_assert_code_exception"
    what = "eosio_assert_code assertion failure"


class UnknownAction(ActionValidateException):
    eos_code = 3050006
    eos_name = "action_not_found_exception"
    what = "Action can not be found"


class TableAccessViolation(ActionValidateException):
    eos_code = 3050008
    eos_name = "table_access_violation"
    what = "Table access violation"


class UnknownAccount(ActionValidateException):
    eos_code = 3050009
    eos_name = "unknown_account_exception"
    what = "Account does not exist"


class ResourceExhausted(ChainException):
    eos_code = 3080000
    eos_name = "resource_exhausted_exception"
    what = "Resource exhausted exception"


class NetUsageExceeded(ResourceExhausted):
    eos_code = 3080002
    eos_name = "tx_net_usage_exceeded"
    what = "Transaction exceeded the current network usage limit imposed on the transaction"


class CpuUsageExceeded(ResourceExhausted):
    eos_code = 3080004
    eos_name = "tx_cpu_usage_exceeded"
    what = "Transaction exceeded the current CPU usage limit imposed on the transaction"


class AuthorizationException(ChainException):
    eos_code = 3090000
    eos_name = "authorization_exception"
    what = "Authorization exception"


class UnsatisfiedAuthorization(AuthorizationException):
    eos_code = 3090003
    eos_name = "unsatisfied_authorization"
    what = "Provided keys, permissions, and delays do not satisfy declared authorizations"


class MissingAuth(AuthorizationException):
    eos_code = 3090004
    eos_name = "missing_auth_exception"
    what = "Missing required authority"


class IrrelevantAuth(AuthorizationException):
    eos_code = 3090005
    eos_name = "irrelevant_auth_exception"
    what = "Irrelevant authority included"


class UnknownPermission(AuthorizationException):
    eos_code = 3090008
    eos_name = "permission_query_exception"
    what = "Permission Query Exception"


class ChainIdMismatch(ChainException):
    eos_code = 3170000
    eos_name = "chain_id_type_exception"
    what = "chain id mismatch"


class SnapshotException(ChainException):
    eos_code = 3140000
    eos_name = "snapshot_exception"
    what = "Snapshot exception"


class ParseError(ChainException):
    eos_code = 4
    eos_name = "parse_error_exception"
    what = "Parse Error"


__all__ = [
    "ChainException",
    "BlockValidateException",
    "TransactionException",
    "ExpiredTransaction",
    "TransactionExpirationTooFar",
    "DuplicateTransaction",
    "NoActions",
    "ActionValidateException",
    "AccountNameExists",
    "InvalidActionArgs",
    "EosioAssertMessage",
    "EosioAssertCode",
    "UnknownAction",
    "TableAccessViolation",
    "UnknownAccount",
    "ResourceExhausted",
    "NetUsageExceeded",
    "CpuUsageExceeded",
    "AuthorizationException",
    "UnsatisfiedAuthorization",
    "MissingAuth",
    "IrrelevantAuth",
    "UnknownPermission",
    "ChainIdMismatch",
    "SnapshotException",
    "ParseError",
]
