"""
backend/audit_sink.py
"Reason for access" audit trail for the Zero-Trust Gatekeeper, Emergency
Override and access-request transitions.

Sinks:
  memory   — in-process list (tests, local dev)
  supabase — audit_log table
  contract — logAccessReason(recordHash, reason) on the audit smart contract

Audit writes are best-effort: log_access_reason() never raises, so a failing
sink cannot block an unlock that already succeeded.
"""

import os
import uuid
import queue
import logging
import datetime
import threading
from concurrent.futures import Future, TimeoutError as FutureTimeout
from typing import Optional

import database
from errors import UpstreamUnavailable

logger = logging.getLogger("jeevan.audit_sink")

AUDIT_SINK = os.environ.get("AUDIT_SINK", "")
AUDIT_RPC_URL = os.environ.get("AUDIT_RPC_URL", "")
AUDIT_CONTRACT_ADDRESS = os.environ.get("AUDIT_CONTRACT_ADDRESS", "")
AUDIT_PRIVATE_KEY = os.environ.get("AUDIT_PRIVATE_KEY", "")
AUDIT_RPC_TIMEOUT_S = float(os.environ.get("AUDIT_RPC_TIMEOUT_S", 10))
AUDIT_RECEIPT_TIMEOUT_S = float(os.environ.get("AUDIT_RECEIPT_TIMEOUT_S", 60))
# how long a request handler waits for a receipt before answering without one
AUDIT_WAIT_S = float(os.environ.get("AUDIT_WAIT_S", 2))

AUDIT_ABI = [
    {
        "anonymous": False,
        "inputs": [
            {"indexed": False, "name": "recordHash", "type": "string"},
            {"indexed": False, "name": "doctor", "type": "address"},
            {"indexed": False, "name": "reason", "type": "string"},
            {"indexed": False, "name": "timestamp", "type": "uint256"},
        ],
        "name": "DocumentAccessed",
        "type": "event",
    },
    {
        "inputs": [
            {"name": "recordHash", "type": "string"},
            {"name": "reason", "type": "string"},
        ],
        "name": "logAccessReason",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function",
    },
]


def _now_iso() -> str:
    return datetime.datetime.now(datetime.timezone.utc).isoformat().replace("+00:00", "Z")


class InMemoryAuditSink:
    def __init__(self, limit: int = 2000):
        self.limit = limit
        self._entries: list = []
        self._lock = threading.Lock()

    def record(self, record_hash: str, reason: str, actor: Optional[str] = None) -> dict:
        entry = {
            "id": str(uuid.uuid4()),
            "record_hash": record_hash,
            "reason": reason,
            "actor": actor,
            "status": "recorded",
            "logged_at": _now_iso(),
        }
        with self._lock:
            self._entries.append(entry)
            self._entries = self._entries[-self.limit:]
        return entry

    def recent(self, limit: int = 100) -> list:
        with self._lock:
            return list(reversed(self._entries[-limit:]))


class SupabaseAuditSink:
    def record(self, record_hash: str, reason: str, actor: Optional[str] = None) -> dict:
        return database.append_audit(
            "ACCESS_REASON",
            record_hash,
            {"reason": reason, "actor": actor},
        )

    def recent(self, limit: int = 100) -> list:
        return database.fetch_audit_log(limit=limit)


class ContractAuditSink:
    """Records access reasons on-chain through the audit contract."""

    def __init__(self, rpc_url: str, contract_address: str, private_key: str):
        from web3 import Web3

        self.w3 = Web3(Web3.HTTPProvider(rpc_url, request_kwargs={"timeout": AUDIT_RPC_TIMEOUT_S}))
        self.account = self.w3.eth.account.from_key(private_key)
        self.contract = self.w3.eth.contract(
            address=Web3.to_checksum_address(contract_address),
            abi=AUDIT_ABI,
        )
        self._sent: list = []
        # nonce read, send and receipt wait happen as one step per transaction
        self._lock = threading.Lock()

    def record(self, record_hash: str, reason: str, actor: Optional[str] = None) -> dict:
        with self._lock:
            try:
                tx = self.contract.functions.logAccessReason(record_hash, reason).build_transaction({
                    "from": self.account.address,
                    "nonce": self.w3.eth.get_transaction_count(self.account.address, "pending"),
                })
                signed = self.account.sign_transaction(tx)
                tx_hash = self.w3.eth.send_raw_transaction(signed.raw_transaction)
                receipt = self.w3.eth.wait_for_transaction_receipt(tx_hash, timeout=AUDIT_RECEIPT_TIMEOUT_S)
            except Exception as e:
                raise UpstreamUnavailable("audit-contract", str(e)) from e

            entry = {
                "record_hash": record_hash,
                "reason": reason,
                "actor": actor,
                "status": "success" if receipt.status == 1 else "reverted",
                "tx_hash": tx_hash.hex(),
                "block_number": receipt.blockNumber,
                "logged_at": _now_iso(),
            }
            self._sent.append(entry)
            self._sent = self._sent[-500:]
        return entry

    def recent(self, limit: int = 100) -> list:
        with self._lock:
            return list(reversed(self._sent[-limit:]))


def build_audit_sink(kind: Optional[str] = None):
    """Pick the sink from AUDIT_SINK, defaulting to Supabase when it is configured."""
    kind = (kind or AUDIT_SINK or ("supabase" if database.SUPABASE_ENABLED else "memory")).lower()
    if kind == "contract":
        if not (AUDIT_RPC_URL and AUDIT_CONTRACT_ADDRESS and AUDIT_PRIVATE_KEY):
            raise ValueError("AUDIT_SINK=contract requires AUDIT_RPC_URL, AUDIT_CONTRACT_ADDRESS and AUDIT_PRIVATE_KEY")
        logger.info(f"Audit sink: contract {AUDIT_CONTRACT_ADDRESS} via {AUDIT_RPC_URL}")
        return ContractAuditSink(AUDIT_RPC_URL, AUDIT_CONTRACT_ADDRESS, AUDIT_PRIVATE_KEY)
    if kind == "supabase":
        logger.info("Audit sink: supabase audit_log table")
        return SupabaseAuditSink()
    logger.info("Audit sink: in-memory")
    return InMemoryAuditSink()


def log_access_reason(sink, record_hash: str, reason: str, actor: Optional[str] = None) -> Optional[dict]:
    """Best-effort audit write. Returns the entry, or None if the sink failed."""
    try:
        entry = sink.record(record_hash, reason, actor=actor)
        logger.info(f"Access reason logged for {record_hash}: {reason}")
        return entry
    except Exception as e:
        logger.warning(f"Audit sink unavailable, continuing without receipt ({record_hash}): {e}")
        return None


class AuditWriter:
    """
    Single background worker for audit writes. Entries reach the sink one at
    a time, in submission order, so a burst of ledger transitions never
    races on the contract nonce.
    """

    def __init__(self, sink, wait_s: float = AUDIT_WAIT_S):
        self.sink = sink
        self.wait_s = wait_s
        self._queue: queue.Queue = queue.Queue()
        self._thread: Optional[threading.Thread] = None
        self._start_lock = threading.Lock()

    def _ensure_worker(self) -> None:
        with self._start_lock:
            if self._thread and self._thread.is_alive():
                return
            self._thread = threading.Thread(target=self._run, name="audit-writer", daemon=True)
            self._thread.start()

    def _run(self):
        while True:
            future, record_hash, reason, actor = self._queue.get()
            try:
                future.set_result(log_access_reason(self.sink, record_hash, reason, actor=actor))
            finally:
                self._queue.task_done()

    def submit(self, record_hash: str, reason: str, actor: Optional[str] = None) -> Future:
        """Queue a write; the Future resolves to the entry, or None if the sink failed."""
        future: Future = Future()
        self._queue.put((future, record_hash, reason, actor))
        self._ensure_worker()
        return future

    def write(self, record_hash: str, reason: str, actor: Optional[str] = None) -> Optional[dict]:
        """
        Queue a write and wait up to wait_s for its receipt. Returns None when
        the sink is slow or down; the write itself still completes in the
        background.
        """
        future = self.submit(record_hash, reason, actor=actor)
        try:
            return future.result(timeout=self.wait_s)
        except FutureTimeout:
            logger.warning(f"Audit receipt for {record_hash} still pending after {self.wait_s}s")
            return None

    def join(self) -> None:
        """Block until every queued write has been handed to the sink."""
        self._queue.join()

    def pending(self) -> int:
        return self._queue.qsize()
