"""
State Root Builder

Commits a subnet's balances and withdrawal queue to a single hash:

    state_root = H(merkle(balance leaves) || merkle(withdrawal leaves) || nonce_be8)

Leaves are sorted by hash bytes before the trees are built, so the root
depends only on the set of non-zero balances and the withdrawal queue
contents, never on insertion order. The builder is pure and stateless;
instances may be shared across threads and subnets.

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

from typing import Iterable, List

from pomsettle.hashing import (
    HashFunction,
    balance_leaf,
    encode_u64_be8,
    merkle_root,
    sha256,
    withdrawal_leaf,
)
from pomsettle.models import Balance, StateRoot, WithdrawalIntent


class StateRootBuilder:
    """Canonicalizes ledger state into leaves and Merkle roots."""

    def __init__(self, hash_fn: HashFunction = sha256):
        self.hash_fn = hash_fn

    def balance_leaves(self, balances: Iterable[Balance]) -> List[bytes]:
        """Leaf hashes of all non-zero balances, unsorted."""
        return [
            balance_leaf(b.user_id, b.asset.code, b.asset.issuer, b.amount, self.hash_fn)
            for b in balances
            if b.amount != 0
        ]

    def withdrawal_leaves(self, withdrawals: Iterable[WithdrawalIntent]) -> List[bytes]:
        return [
            withdrawal_leaf(
                w.withdrawal_id,
                w.user_id,
                w.asset.code,
                w.asset.issuer,
                w.amount,
                w.destination,
                self.hash_fn,
            )
            for w in withdrawals
        ]

    def balances_root(self, balances: Iterable[Balance]) -> bytes:
        return merkle_root(self.balance_leaves(balances), self.hash_fn)

    def withdrawals_root(self, withdrawals: Iterable[WithdrawalIntent]) -> bytes:
        return merkle_root(self.withdrawal_leaves(withdrawals), self.hash_fn)

    def compute_state_root(
        self,
        balances: Iterable[Balance],
        withdrawals: Iterable[WithdrawalIntent],
        nonce: int,
    ) -> StateRoot:
        bal_root = self.balances_root(balances)
        wd_root = self.withdrawals_root(withdrawals)
        root = self.hash_fn(bal_root + wd_root + encode_u64_be8(nonce))
        return StateRoot(
            balances_root=bal_root,
            withdrawals_root=wd_root,
            nonce=nonce,
            root=root,
        )


def compute_state_root(
    balances: Iterable[Balance],
    withdrawals: Iterable[WithdrawalIntent],
    nonce: int,
    hash_fn: HashFunction = sha256,
) -> StateRoot:
    return StateRootBuilder(hash_fn).compute_state_root(balances, withdrawals, nonce)
