"""Payout handlers: collect entry payments and transfer the pool to a winner."""

from __future__ import annotations

from collections import defaultdict
from decimal import Decimal
from threading import Lock
from typing import Dict, Iterable, Optional, Protocol, Set, Tuple

from eth_account import Account
from web3 import Web3

from raffle.lottery.errors import (
    InsufficientFunds,
    PaymentRejected,
    PayoutError,
    PayoutUnresolved,
    TransferRejected,
)
from raffle.utils.common import to_decimal
from raffle.utils.logger import get_logger

logger = get_logger(__name__)


class PayoutHandler(Protocol):
    """Holds the raffle's funds.

    ``collect`` takes an entry payment from a participant, ``payout`` moves
    ``amount`` to ``recipient``. Both raise on any failure. ``reference``
    identifies the payment (a transaction hash) or the payout (the randomness
    request id) so a repeated call is recognised.
    """

    def collect(self, participant: str, amount: Decimal, *, reference: Optional[str] = None) -> None:
        ...

    def payout(self, recipient: str, amount: Decimal, *, reference: object = None) -> Optional[str]:
        ...


class LedgerPayoutHandler:
    """In-memory account ledger with a raffle treasury.

    Entering moves the fee from the participant's balance into the treasury;
    a payout moves value from the treasury to the recipient's balance.
    """

    def __init__(self, *, blocked: Iterable[str] = ()) -> None:
        self._lock = Lock()
        self._balances: Dict[str, Decimal] = defaultdict(Decimal)
        self._treasury = Decimal(0)
        self._blocked = {item.lower() for item in blocked}
        self._transfer_count = 0

    def credit(self, account: str, amount) -> None:
        value = to_decimal(amount)
        if value < 0:
            raise ValueError("Credit must not be negative")
        with self._lock:
            self._balances[account] += value

    def collect(self, participant: str, amount: Decimal, *, reference: Optional[str] = None) -> None:
        value = to_decimal(amount)
        with self._lock:
            available = self._balances.get(participant, Decimal(0))
            if available < value:
                raise InsufficientFunds(f"{participant} has {available}, needs {value}")
            self._balances[participant] = available - value
            self._treasury += value

    def block(self, account: str) -> None:
        with self._lock:
            self._blocked.add(account.lower())

    def balance_of(self, account: str) -> Decimal:
        with self._lock:
            return self._balances.get(account, Decimal(0))

    @property
    def treasury(self) -> Decimal:
        with self._lock:
            return self._treasury

    def payout(self, recipient: str, amount: Decimal, *, reference: object = None) -> Optional[str]:
        value = to_decimal(amount)
        with self._lock:
            if recipient.lower() in self._blocked:
                raise TransferRejected(f"{recipient} cannot receive transfers")
            if self._treasury < value:
                raise InsufficientFunds(f"Treasury holds {self._treasury}, needs {value}")
            self._treasury -= value
            self._balances[recipient] += value
            self._transfer_count += 1
            receipt = f"ledger-{self._transfer_count}"
        logger.info("Ledger payout %s: %s -> %s", receipt, value, recipient)
        return receipt


class Web3PayoutHandler:
    """Takes entries as value transfers to the operator account and pays the
    prize as a plain value transfer back out of it.

    A payout that has been broadcast is remembered by its ``reference`` until
    its receipt is seen, so a retry of the same payout waits on the recorded
    transaction instead of sending a second one.
    """

    def __init__(
        self,
        w3: Web3,
        private_key: str,
        *,
        chain_id: Optional[int] = None,
        gas_limit: int = 21000,
        receipt_timeout: int = 120,
    ) -> None:
        self._w3 = w3
        self.account = Account.from_key(private_key)
        self.chain_id = chain_id if chain_id is not None else int(w3.eth.chain_id)
        self._gas_limit = gas_limit
        self._receipt_timeout = receipt_timeout
        self._lock = Lock()
        self._sent: Dict[object, Tuple[str, str]] = {}
        self._used_payments: Set[str] = set()
        logger.info("Payout account loaded: %s", self.account.address)

    @classmethod
    def from_config(cls, payout_cfg: Dict[str, object]) -> "Web3PayoutHandler":
        rpc_url = str(payout_cfg.get("rpc_url", "http://127.0.0.1:8545"))
        timeout = float(payout_cfg.get("rpc_timeout", 10.0))
        w3 = Web3(Web3.HTTPProvider(rpc_url, request_kwargs={"timeout": timeout}))
        if not w3.is_connected():
            raise ConnectionError(f"Failed to connect to RPC at {rpc_url}")
        chain_id = payout_cfg.get("chain_id")
        return cls(
            w3,
            str(payout_cfg["private_key"]),
            chain_id=int(chain_id) if chain_id is not None else None,
        )

    def pending_transfer(self, reference: object) -> Optional[Tuple[str, str]]:
        """``(recipient, tx_hash)`` of a broadcast payout with no receipt yet."""
        with self._lock:
            return self._sent.get(reference)

    def collect(self, participant: str, amount: Decimal, *, reference: Optional[str] = None) -> None:
        """Accept an entry only against a confirmed transfer to the operator.

        ``reference`` is the hash of the participant's transaction; each hash
        pays for one entry.
        """
        if not reference:
            raise PaymentRejected("Entry requires the payment transaction hash")
        key = reference.lower()
        with self._lock:
            if key in self._used_payments:
                raise PaymentRejected(f"Transaction {reference} already paid for an entry")

        tx = self._w3.eth.get_transaction(reference)
        receipt = self._w3.eth.get_transaction_receipt(reference)
        if int(receipt["status"]) != 1:
            raise PaymentRejected(f"Transaction {reference} failed")
        if str(tx.get("to") or "").lower() != self.account.address.lower():
            raise PaymentRejected(f"Transaction {reference} does not pay {self.account.address}")
        if str(tx.get("from") or "").lower() != participant.lower():
            raise PaymentRejected(f"Transaction {reference} was not sent by {participant}")
        required_wei = Web3.to_wei(to_decimal(amount), "ether")
        if int(tx["value"]) < required_wei:
            raise PaymentRejected(
                f"Transaction {reference} carries {Web3.from_wei(int(tx['value']), 'ether')} ETH, "
                f"entry claims {amount} ETH"
            )

        with self._lock:
            if key in self._used_payments:
                raise PaymentRejected(f"Transaction {reference} already paid for an entry")
            self._used_payments.add(key)
        logger.info("Entry payment %s accepted from %s", reference, participant)

    def payout(self, recipient: str, amount: Decimal, *, reference: object = None) -> Optional[str]:
        sent = self.pending_transfer(reference) if reference is not None else None
        if sent is not None:
            recipient, tx_hash = sent
            logger.info("Payout %s already broadcast as %s, waiting for receipt", reference, tx_hash)
        else:
            tx_hash = self._send(recipient, amount)
            if reference is not None:
                with self._lock:
                    self._sent[reference] = (recipient, tx_hash)

        try:
            receipt = self._w3.eth.wait_for_transaction_receipt(tx_hash, timeout=self._receipt_timeout)
        except Exception as e:
            raise PayoutUnresolved(recipient, tx_hash, str(e)) from e

        with self._lock:
            self._sent.pop(reference, None)
        if int(receipt["status"]) != 1:
            raise PayoutError(f"Transaction failed: {tx_hash}")
        return tx_hash

    def _send(self, recipient: str, amount: Decimal) -> str:
        if not Web3.is_address(recipient):
            raise TransferRejected(f"Invalid recipient address {recipient}")
        to_address = Web3.to_checksum_address(recipient)
        amount_wei = Web3.to_wei(to_decimal(amount), "ether")

        balance = self._w3.eth.get_balance(self.account.address)
        if balance < amount_wei:
            raise InsufficientFunds(
                f"Insufficient balance. Have: {Web3.from_wei(balance, 'ether')} ETH, Need: {amount} ETH"
            )

        transaction = {
            "to": to_address,
            "value": amount_wei,
            "gas": self._gas_limit,
            "gasPrice": self._w3.eth.gas_price,
            "nonce": self._w3.eth.get_transaction_count(self.account.address),
            "chainId": self.chain_id,
        }
        signed = self.account.sign_transaction(transaction)
        tx_hash = Web3.to_hex(self._w3.eth.send_raw_transaction(signed.raw_transaction))
        logger.info("Payout transaction sent: %s", tx_hash)
        return tx_hash
