"""
Ledger Store

Minimal per-subnet bookkeeping that produces the inputs the settlement core
consumes: the balance set and withdrawal queue behind a state root, and the
sealed queue for each committed block.

All mutations for one subnet go through a single lock; the store is a
single-writer state machine. Balances never go negative: a debit larger than
the balance is rejected, not clamped.

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import threading
from typing import Dict, List, Optional, Tuple

from pomsettle.hardening import AtomicCounter, InvariantChecker, ValidationError, Validators
from pomsettle.hashing import I128_MAX, HashFunction, encode_u64_be8, hex32_to_bytes, sha256
from pomsettle.models import Asset, Balance, StateRoot, WithdrawalIntent
from pomsettle.observability import Component, get_logger
from pomsettle.state_root import StateRootBuilder

logger = get_logger("ledger", Component.LEDGER)


class LedgerStore:
    """Balances and the open withdrawal queue of one subnet."""

    def __init__(self, subnet_id: str, hash_fn: HashFunction = sha256):
        self.subnet_id = Validators.validate_hex32(subnet_id, "subnet_id").value_or_raise()
        self.hash_fn = hash_fn
        self._balances: Dict[Tuple[str, Asset], int] = {}
        self._queue: List[WithdrawalIntent] = []
        self._sealed: Dict[int, Tuple[WithdrawalIntent, ...]] = {}
        self._nonce = AtomicCounter(0)
        self._withdrawal_counter = AtomicCounter(0)
        self._last_sealed: Optional[int] = None
        self._lock = threading.Lock()

    @staticmethod
    def _positive(amount: int) -> int:
        return Validators.validate_amount(amount, "amount", min_value=1).value_or_raise()

    def _user(self, user_id: str) -> str:
        return Validators.validate_hex32(user_id, "user_id").value_or_raise()

    # -------------------------------------------------------------------------
    # Balance operations
    # -------------------------------------------------------------------------

    def balance_of(self, user_id: str, asset: Asset) -> int:
        with self._lock:
            return self._balances.get((self._user(user_id), asset), 0)

    def credit(self, user_id: str, asset: Asset, amount: int) -> int:
        amount = self._positive(amount)
        key = (self._user(user_id), asset)
        with self._lock:
            new_balance = self._balances.get(key, 0) + amount
            if new_balance > I128_MAX:
                raise ValidationError("amount", "Balance would exceed i128", new_balance)
            self._balances[key] = new_balance
            return new_balance

    def _debit_locked(self, key: Tuple[str, Asset], amount: int) -> int:
        available = self._balances.get(key, 0)
        InvariantChecker.check_balance_sufficient(available, amount, f"{key[1].code} balance")
        remaining = available - amount
        if remaining:
            self._balances[key] = remaining
        else:
            del self._balances[key]
        return remaining

    def debit(self, user_id: str, asset: Asset, amount: int) -> int:
        """Raises InvariantViolation when the balance is insufficient."""
        amount = self._positive(amount)
        key = (self._user(user_id), asset)
        with self._lock:
            return self._debit_locked(key, amount)

    def transfer(self, from_user: str, to_user: str, asset: Asset, amount: int) -> None:
        amount = self._positive(amount)
        source = (self._user(from_user), asset)
        target = (self._user(to_user), asset)
        with self._lock:
            credited = self._balances.get(target, 0) + amount
            if source != target and credited > I128_MAX:
                raise ValidationError("amount", "Balance would exceed i128", credited)
            self._debit_locked(source, amount)
            self._balances[target] = self._balances.get(target, 0) + amount

    # -------------------------------------------------------------------------
    # Withdrawals
    # -------------------------------------------------------------------------

    def _next_withdrawal_id(self, user_id: str) -> str:
        counter = self._withdrawal_counter.increment()
        return self.hash_fn(
            b"WID"
            + hex32_to_bytes(self.subnet_id, "subnet_id")
            + hex32_to_bytes(user_id, "user_id")
            + encode_u64_be8(counter)
        ).hex()

    def request_withdrawal(self, user_id: str, asset: Asset, amount: int, destination: str) -> WithdrawalIntent:
        """Debit the user and append the withdrawal to the open queue as one step."""
        amount = self._positive(amount)
        user_id = self._user(user_id)
        destination = Validators.validate_hex32(destination, "destination").value_or_raise()
        Validators.validate_asset_code(asset.code).raise_if_invalid()

        with self._lock:
            self._debit_locked((user_id, asset), amount)
            intent = WithdrawalIntent(
                withdrawal_id=self._next_withdrawal_id(user_id),
                user_id=user_id,
                asset=asset,
                amount=amount,
                destination=destination,
            )
            self._queue.append(intent)

        logger.debug("Withdrawal requested", subnet_id=self.subnet_id, withdrawal_id=intent.withdrawal_id)
        return intent

    # -------------------------------------------------------------------------
    # Views
    # -------------------------------------------------------------------------

    def balances(self) -> List[Balance]:
        with self._lock:
            return [
                Balance(user_id=user, asset=asset, amount=amount)
                for (user, asset), amount in self._balances.items()
                if amount != 0
            ]

    def pending_withdrawals(self) -> List[WithdrawalIntent]:
        with self._lock:
            return list(self._queue)

    @property
    def nonce(self) -> int:
        return self._nonce.get()

    def state_root(self, builder: Optional[StateRootBuilder] = None) -> StateRoot:
        builder = builder or StateRootBuilder(self.hash_fn)
        with self._lock:
            balances = [
                Balance(user_id=user, asset=asset, amount=amount)
                for (user, asset), amount in self._balances.items()
            ]
            queue = list(self._queue)
            nonce = self._nonce.get()
        return builder.compute_state_root(balances, queue, nonce)

    # -------------------------------------------------------------------------
    # Epochs
    # -------------------------------------------------------------------------

    def seal_epoch(self, block_number: int, builder: Optional[StateRootBuilder] = None) -> Tuple[StateRoot, List[WithdrawalIntent]]:
        """
        Freeze the open queue under block_number.

        Returns the state root over the current balances and the sealed queue
        at the current nonce, then advances the nonce and opens an empty queue.
        """
        builder = builder or StateRootBuilder(self.hash_fn)
        with self._lock:
            InvariantChecker.check_strictly_increasing("block_number", self._last_sealed, block_number)
            balances = [
                Balance(user_id=user, asset=asset, amount=amount)
                for (user, asset), amount in self._balances.items()
            ]
            sealed = tuple(self._queue)
            root = builder.compute_state_root(balances, sealed, self._nonce.get())
            self._sealed[block_number] = sealed
            self._queue = []
            self._last_sealed = block_number
            self._nonce.increment()

        logger.info(
            "Sealed epoch",
            subnet_id=self.subnet_id,
            block_number=block_number,
            withdrawals=len(sealed),
            state_root=root.hex,
        )
        return root, list(sealed)

    def fetch_withdrawals(self, subnet_id: str, block_number: int) -> List[WithdrawalIntent]:
        """WithdrawalSource view of the sealed queues."""
        if subnet_id.lower() != self.subnet_id:
            return []
        with self._lock:
            return list(self._sealed.get(block_number, ()))
