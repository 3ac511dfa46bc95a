"""Shared fixtures for approvalsentinel tests."""

from __future__ import annotations

from typing import Callable

import pytest

from approvalsentinel import APPROVE_SELECTOR, ApprovalRiskEngine, Call, Log


SPENDER = "0x1234567890123456789012345678901234567890"
EOA_SPENDER = "0x1234567890123456789012345678901234567789"
INFINITE = "f" * 64
TEN = "0" * 63 + "a"


def _approve_input(spender: str = SPENDER, amount_word: str = TEN) -> str:
    return APPROVE_SELECTOR + "0" * 24 + spender[2:] + amount_word


@pytest.fixture
def approve_input() -> Callable[..., str]:
    """Build approve(address,uint256) call data from a spender and a raw amount word."""
    return _approve_input


@pytest.fixture
def make_call() -> Callable[..., Call]:
    def _make(input: str = "0x", from_: str = "0x123", to: str = "0x456", calls=()) -> Call:
        return Call(from_=from_, to=to, input=input, calls=tuple(calls))
    return _make


@pytest.fixture
def approval_log() -> Log:
    return Log(topics=(APPROVE_SELECTOR, "0x123", "0x456"), address="0x789", data="0x")


@pytest.fixture
def engine() -> ApprovalRiskEngine:
    return ApprovalRiskEngine()


@pytest.fixture
def request_dict() -> Callable[..., dict]:
    """Detection request shaped like the monitoring host sends it."""
    def _make(calls=(), logs=(), root_input: str = "0x") -> dict:
        return {
            "chainId": 1,
            "hash": "0xabc",
            "trace": {
                "from": "0x123",
                "to": "0x456",
                "value": "0x0",
                "gas": "0x0",
                "gasUsed": "0x0",
                "input": root_input,
                "output": "0x",
                "pre": {},
                "post": {},
                "calls": list(calls),
                "logs": list(logs),
            },
        }
    return _make
