"""
Bundler JSON-RPC API.

Exposes the ERC-4337 bundler methods over JSON-RPC 2.0 at ``/rpc``:
- eth_chainId, eth_supportedEntryPoints
- eth_sendUserOperation: simulate, apply the submission policy, queue
- eth_getUserOperationReceipt
- debug_bundler_clearState, debug_bundler_dumpMempool,
  debug_bundler_sendBundleNow

Rejections are returned verbatim from the layer that denied the operation
as ``{code, message, data}``.
"""

from __future__ import annotations

import inspect
import logging
from typing import Any, Callable, Dict, List, Optional

from flask import Flask, Response, jsonify, request
from pydantic import ValidationError as PydanticValidationError

from smartauth.core import metrics
from smartauth.core.contracts.entry_point import EntryPoint, OpReceipt
from smartauth.core.crypto_utils import ZERO_ADDRESS, normalize_address, to_checksum
from smartauth.core.exceptions import MalformedPayloadError, PolicyViolation
from smartauth.core.ledger import Ledger
from smartauth.bundler.mempool import Mempool, MempoolEntry
from smartauth.bundler.rules import RpcErrorCode, check_simulation
from smartauth.bundler.schemas import JsonRpcRequest, UserOperationModel

logger = logging.getLogger(__name__)


class Bundler:
    """Mempool plus the entry point it submits bundles to."""

    def __init__(
        self,
        ledger: Ledger,
        entry_point: EntryPoint,
        mempool: Optional[Mempool] = None,
        beneficiary: str = ZERO_ADDRESS,
    ) -> None:
        self.ledger = ledger
        self.entry_point = entry_point
        self.mempool = mempool or Mempool()
        self.beneficiary = beneficiary
        self.receipts: Dict[bytes, OpReceipt] = {}

    def send_user_operation(self, raw_op: Any, entry_point: Any) -> str:
        if not isinstance(raw_op, dict) or not isinstance(entry_point, str):
            raise PolicyViolation("expected (userOperation, entryPoint)", RpcErrorCode.INVALID_PARAMS)
        try:
            op = UserOperationModel.model_validate(raw_op).to_user_operation()
            requested = normalize_address(entry_point)
        except (PydanticValidationError, MalformedPayloadError) as exc:
            raise PolicyViolation(
                "invalid userOperation", RpcErrorCode.INVALID_PARAMS, {"error": str(exc)}
            ) from exc
        if requested != self.entry_point.address:
            raise PolicyViolation(
                "unsupported entry point", RpcErrorCode.INVALID_PARAMS, {"entryPoint": requested}
            )

        result = self.entry_point.simulate_validation(op)
        validation = check_simulation(result, self.ledger.timestamp)
        self.mempool.add(MempoolEntry(op, result.user_op_hash, validation))
        return "0x" + result.user_op_hash.hex()

    def send_bundle_now(self) -> List[str]:
        entries = self.mempool.pop_bundle(self.ledger.timestamp)
        if not entries:
            return []
        receipts = self.entry_point.handle_ops([e.op for e in entries], self.beneficiary)
        for receipt in receipts:
            self.receipts[receipt.user_op_hash] = receipt
        return ["0x" + r.user_op_hash.hex() for r in receipts]

    def get_receipt(self, user_op_hash: Any) -> Optional[Dict[str, object]]:
        if not isinstance(user_op_hash, str) or not user_op_hash.startswith("0x"):
            raise PolicyViolation("expected a 0x-prefixed hash", RpcErrorCode.INVALID_PARAMS)
        try:
            key = bytes.fromhex(user_op_hash[2:])
        except ValueError as exc:
            raise PolicyViolation("invalid hash", RpcErrorCode.INVALID_PARAMS) from exc
        receipt = self.receipts.get(key)
        return receipt.to_dict() if receipt else None

    def clear_state(self) -> str:
        self.mempool.clear()
        self.receipts.clear()
        return "ok"


def create_app(
    ledger: Ledger,
    entry_point: EntryPoint,
    mempool: Optional[Mempool] = None,
) -> Flask:
    """Build the Flask app serving the bundler JSON-RPC API."""
    app = Flask(__name__)
    bundler = Bundler(ledger, entry_point, mempool)
    app.config["BUNDLER"] = bundler

    methods: Dict[str, Callable[..., Any]] = {
        "eth_chainId": lambda: hex(ledger.chain_id),
        "eth_supportedEntryPoints": lambda: [to_checksum(entry_point.address)],
        "eth_sendUserOperation": bundler.send_user_operation,
        "eth_getUserOperationReceipt": bundler.get_receipt,
        "debug_bundler_clearState": bundler.clear_state,
        "debug_bundler_dumpMempool": lambda *_: bundler.mempool.dump(),
        "debug_bundler_sendBundleNow": bundler.send_bundle_now,
    }

    def _error(request_id: Any, error: Dict[str, Any]) -> Response:
        return jsonify({"jsonrpc": "2.0", "id": request_id, "error": error})

    @app.route("/rpc", methods=["POST"])
    def rpc() -> Response:
        payload = request.get_json(silent=True)
        if not isinstance(payload, dict):
            return _error(None, {"code": int(RpcErrorCode.INVALID_REQUEST), "message": "invalid JSON-RPC request"})
        try:
            rpc_request = JsonRpcRequest.model_validate(payload)
        except PydanticValidationError as exc:
            return _error(
                payload.get("id"),
                {"code": int(RpcErrorCode.INVALID_REQUEST), "message": "invalid JSON-RPC request", "data": {"error": str(exc)}},
            )

        handler = methods.get(rpc_request.method)
        if handler is None:
            return _error(
                rpc_request.id,
                {"code": int(RpcErrorCode.METHOD_NOT_FOUND), "message": f"method {rpc_request.method} not found"},
            )

        try:
            inspect.signature(handler).bind(*rpc_request.params)
        except TypeError as exc:
            return _error(
                rpc_request.id,
                {"code": int(RpcErrorCode.INVALID_PARAMS), "message": "wrong number of params", "data": {"error": str(exc)}},
            )

        try:
            result = handler(*rpc_request.params)
        except PolicyViolation as exc:
            metrics.MEMPOOL_REJECTIONS.labels(code=str(int(exc.code))).inc()
            logger.warning(
                "UserOp rejected",
                extra={
                    "event": "bundler.op_rejected",
                    "method": rpc_request.method,
                    "code": int(exc.code),
                    "error": exc.message,
                },
            )
            error = exc.to_rpc_error()
            error["code"] = int(exc.code)
            return _error(rpc_request.id, error)
        return jsonify({"jsonrpc": "2.0", "id": rpc_request.id, "result": result})

    @app.route("/metrics", methods=["GET"])
    def prometheus_metrics() -> Response:
        return Response(metrics.export_metrics(), mimetype="text/plain; version=0.0.4")

    return app
