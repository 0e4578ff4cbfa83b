"""
Modular smart account (ERC-4337).

The account itself holds no authorization logic. Every operation carries a
signature envelope ``(payload, handler)``; the account checks that
``handler`` is one of its enabled modules and forwards ``payload`` together
with the original operation hash. The same dispatch serves ERC-1271
``isValidSignature`` for off-chain approvals.

Security features:
- Only the entry point may request validation
- Only the entry point or the account itself may execute or manage modules
- Malformed envelopes and unknown handlers are denied, never raised
"""

from __future__ import annotations

import logging
from typing import Any, List, Optional

from smartauth.core.config import ERC1271_INVALID
from smartauth.core.crypto_utils import ZERO_ADDRESS, normalize_address
from smartauth.core.envelope import SignatureEnvelope
from smartauth.core.exceptions import MalformedPayloadError
from smartauth.core.ledger import Contract, Ledger, external
from smartauth.core.operation import UserOperation
from smartauth.core.validation import ValidationData, ValidationModule

logger = logging.getLogger(__name__)

# Head marker of the module list, mirrors the linked-list sentinel on-chain
SENTINEL_MODULE = "0x0000000000000000000000000000000000000001"

EXECUTE_SIGNATURE = "execute(address,uint256,bytes)"
EXECUTE_BATCH_SIGNATURE = "executeBatch(address[],uint256[],bytes[])"


class SmartAccount(Contract):
    """
    Smart account with envelope-based module dispatch.

    Args:
        ledger: Ledger the account is deployed on
        entry_point: Address of the trusted dispatcher
        default_module: First validation module, enabled at deployment
        setup_data: Call data sent to ``default_module`` to initialize it
    """

    def __init__(
        self,
        ledger: Ledger,
        entry_point: str,
        default_module: Optional[str] = None,
        setup_data: bytes = b"",
        address: Optional[str] = None,
    ) -> None:
        super().__init__(ledger, address)
        self.entry_point = normalize_address(entry_point)
        self.modules: List[str] = []
        if default_module is not None:
            self._setup_and_enable(default_module, setup_data)

    # ==================== Access control ====================

    def _require_entry_point(self, caller: str) -> None:
        self._require(normalize_address(caller) == self.entry_point, "Caller not EntryPoint")

    def _require_authorized(self, caller: str) -> None:
        caller = normalize_address(caller)
        self._require(
            caller in (self.entry_point, self.address),
            "Caller not EntryPoint or Self",
        )

    # ==================== IAccount (ERC-4337) ====================

    def validate_user_op(
        self, caller: str, op: UserOperation, op_hash: bytes
    ) -> ValidationData:
        """
        Unwrap one envelope layer and delegate to the named module.

        Returns:
            The module's verdict, or a denied verdict for a malformed envelope
            or a handler that is not an enabled module

        Raises:
            ExecutionReverted: if ``caller`` is not the entry point
        """
        self._require_entry_point(caller)
        self._account_slot(self.address)
        try:
            envelope = SignatureEnvelope.decode(op.signature)
        except MalformedPayloadError as exc:
            logger.info(
                "Malformed signature envelope",
                extra={
                    "event": "account.envelope_malformed",
                    "account": self.address,
                    "error": exc.message,
                },
            )
            return ValidationData.failure("Malformed signature envelope")

        module = self._enabled_validation_module(envelope.handler)
        if module is None:
            logger.info(
                "Validation handler is not an enabled module",
                extra={
                    "event": "account.handler_rejected",
                    "account": self.address,
                    "handler": envelope.handler,
                },
            )
            return ValidationData.failure("WrongValidationModule")
        return module.validate_user_op(op.with_signature(envelope.payload), op_hash)

    def _enabled_validation_module(self, handler: str) -> Optional[ValidationModule]:
        if handler not in self.modules:
            return None
        module = self.ledger.contract_at(handler)
        return module if isinstance(module, ValidationModule) else None

    # ==================== ERC-1271 ====================

    def is_valid_signature(self, data_hash: bytes, signature: bytes) -> int:
        """Return the ERC-1271 magic value if an enabled module vouches for the signature."""
        try:
            envelope = SignatureEnvelope.decode(signature)
        except MalformedPayloadError:
            return ERC1271_INVALID
        module = self._enabled_validation_module(envelope.handler)
        if module is None:
            return ERC1271_INVALID
        return module.is_valid_signature_for_address(data_hash, envelope.payload, self.address)

    # ==================== Execution ====================

    @external(EXECUTE_SIGNATURE)
    def execute(self, caller: str, dest: str, value: int, data: bytes) -> Any:
        self._require_authorized(caller)
        logger.debug(
            "Account executing call",
            extra={
                "event": "account.execute",
                "account": self.address,
                "dest": normalize_address(dest),
                "value": value,
            },
        )
        return self._call(dest, value, data)

    @external(EXECUTE_BATCH_SIGNATURE)
    def execute_batch(
        self, caller: str, dests: List[str], values: List[int], datas: List[bytes]
    ) -> List[Any]:
        """Execute multiple calls; one revert reverts the whole batch."""
        self._require_authorized(caller)
        self._require(
            len(dests) == len(datas) and (len(values) == 0 or len(values) == len(datas)),
            "Wrong array lengths",
        )
        results = []
        for i, dest in enumerate(dests):
            value = values[i] if values else 0
            results.append(self._call(dest, value, datas[i]))
        return results

    # ==================== Module management ====================

    def is_module_enabled(self, module: str) -> bool:
        return normalize_address(module) in self.modules

    def get_modules(self) -> List[str]:
        return list(self.modules)

    @external("enableModule(address)")
    def enable_module(self, caller: str, module: str) -> None:
        self._require_authorized(caller)
        self._enable(module)

    @external("setupAndEnableModule(address,bytes)")
    def setup_and_enable_module(self, caller: str, module: str, setup_data: bytes) -> None:
        self._require_authorized(caller)
        self._setup_and_enable(module, setup_data)

    @external("disableModule(address,address)")
    def disable_module(self, caller: str, prev_module: str, module: str) -> None:
        """Remove ``module``; ``prev_module`` must precede it (sentinel for the head)."""
        self._require_authorized(caller)
        module = normalize_address(module)
        prev_module = normalize_address(prev_module)
        self._require(module not in (ZERO_ADDRESS, SENTINEL_MODULE), "ModuleCannotBeZeroOrSentinel")
        self._require(module in self.modules, "ModuleNotEnabled")
        index = self.modules.index(module)
        expected_prev = SENTINEL_MODULE if index == 0 else self.modules[index - 1]
        self._require(prev_module == expected_prev, "ModuleAndPrevModuleMismatch")
        self.modules.pop(index)
        self._emit("DisabledModule", module=module)

    def _enable(self, module: str) -> None:
        module = normalize_address(module)
        self._require(module not in (ZERO_ADDRESS, SENTINEL_MODULE), "ModuleCannotBeZeroOrSentinel")
        self._require(module not in self.modules, "ModuleAlreadyEnabled")
        self.modules.append(module)
        self._emit("EnabledModule", module=module)
        logger.info(
            "Module enabled",
            extra={"event": "account.module_enabled", "account": self.address, "module": module},
        )

    def _setup_and_enable(self, module: str, setup_data: bytes) -> None:
        if setup_data:
            self._call(module, 0, setup_data)
        self._enable(module)
