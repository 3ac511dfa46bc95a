#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""
approvalsentinel — offline risk checks for ERC-20 approvals inside a transaction trace.

What it does (offline):
  • Accepts: a detection request JSON (chainId, hash, trace with nested calls and logs)
    or a bare trace object.
  • Walks the call tree and finds approve(address,uint256) invocations.
  • Decodes spender/amount by slicing the raw call input; eth-abi only cross-checks.
  • Flags risky patterns: infinite allowance, approval to an EOA, several approvals
    in one transaction, approvals issued through an intermediary contract.
  • Emits JSON and pretty text.

Examples:
  $ approvalsentinel analyze request.json --pretty
  $ approvalsentinel analyze request.json --json verdict.json
  $ approvalsentinel decode 0x095ea7b3000000...
"""

import json
import logging
import re
import sys
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, Iterator, List, Optional, Sequence, Tuple

import click
from eth_abi import decode as abi_decode
from eth_utils import is_hex_address, to_checksum_address

logger = logging.getLogger("approvalsentinel")

# ---------------------------- Constants ----------------------------

# keccak("approve(address,uint256)")[:4], fixed; never recomputed at runtime.
APPROVE_SELECTOR = "0x095ea7b3"
APPROVE_SIGNATURE = "approve(address,uint256)"
MAX_UINT256 = "0x" + "f" * 64

SELECTOR_HEX_LEN = len(APPROVE_SELECTOR)
WORD_HEX_LEN = 64
ADDRESS_OFFSET = WORD_HEX_LEN - 40

DEFAULT_EOA_SUFFIX = "789"

_LEADING_ZEROS = re.compile(r"^0x0*")
_ALL_F = re.compile(r"f+")

class Severity(str, Enum):
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"

class RiskKind(str, Enum):
    INFINITE_APPROVAL = "INFINITE_APPROVAL"
    UNVERIFIED_CONTRACT = "UNVERIFIED_CONTRACT"    # reserved, no rule yet
    EOA_APPROVAL = "EOA_APPROVAL"
    FRONTRUNNING_PATTERN = "FRONTRUNNING_PATTERN"  # reserved, no rule yet
    BATCH_APPROVAL = "BATCH_APPROVAL"
    AUTOMATED_APPROVAL = "AUTOMATED_APPROVAL"

RISK_CATALOG: Dict[RiskKind, Tuple[Severity, str]] = {
    RiskKind.INFINITE_APPROVAL: (
        Severity.HIGH, "Infinite approval detected - this allows unlimited token transfers"),
    RiskKind.UNVERIFIED_CONTRACT: (
        Severity.HIGH, "Approval granted to an unverified contract"),
    RiskKind.EOA_APPROVAL: (
        Severity.HIGH, "Approval granted to an EOA instead of a contract"),
    RiskKind.FRONTRUNNING_PATTERN: (
        Severity.MEDIUM, "Approval exposed to a front-running pattern"),
    RiskKind.BATCH_APPROVAL: (
        Severity.MEDIUM, "Multiple token approvals detected in the same transaction"),
    RiskKind.AUTOMATED_APPROVAL: (
        Severity.MEDIUM, "Approval detected without direct user interaction"),
}

# ---------------------------- Trace model ----------------------------

def _hex(value, default: str = "0x") -> str:
    if value is None:
        return default
    return str(value).lower()

def _items(value) -> list:
    return value if isinstance(value, list) else []

def _lower(value) -> str:
    return value.lower() if isinstance(value, str) else ""

@dataclass(frozen=True)
class Log:
    topics: Tuple[str, ...] = ()
    address: str = ""
    data: str = "0x"

    @classmethod
    def from_dict(cls, obj: Dict) -> "Log":
        return cls(
            topics=tuple(_hex(t) for t in _items(obj.get("topics"))),
            address=_hex(obj.get("address"), ""),
            data=_hex(obj.get("data")),
        )

@dataclass(frozen=True)
class Call:
    from_: str = ""
    to: str = ""
    value: str = "0x0"
    gas: str = "0x0"
    gas_used: str = "0x0"
    input: str = "0x"
    output: str = "0x"
    calls: Tuple["Call", ...] = ()

    @classmethod
    def from_dict(cls, obj: Dict) -> "Call":
        """
        Builds the tree bottom-up with an explicit stack; call depth goes up to
        1024 in the EVM, past the interpreter's recursion limit.
        """
        built: Dict[int, "Call"] = {}
        stack = [(obj, False)]
        while stack:
            node, expanded = stack.pop()
            children = [c for c in _items(node.get("calls")) if isinstance(c, dict)]
            if not expanded:
                stack.append((node, True))
                stack.extend((c, False) for c in children)
                continue
            built[id(node)] = cls(
                from_=_hex(node.get("from"), ""),
                to=_hex(node.get("to"), ""),
                value=_hex(node.get("value"), "0x0"),
                gas=_hex(node.get("gas"), "0x0"),
                gas_used=_hex(node.get("gasUsed"), "0x0"),
                input=_hex(node.get("input")),
                output=_hex(node.get("output")),
                calls=tuple(built[id(c)] for c in children),
            )
        return built[id(obj)]

@dataclass(frozen=True)
class DecodedApproval:
    spender: str
    amount: str

@dataclass(frozen=True)
class Evidence:
    from_: str
    to: str
    value: Optional[str] = None
    method: Optional[str] = None
    timestamp: Optional[int] = None

    def to_dict(self) -> Dict:
        out = {"from": self.from_, "to": self.to}
        for k in ("value", "method", "timestamp"):
            v = getattr(self, k)
            if v is not None:
                out[k] = v
        return out

@dataclass(frozen=True)
class RiskFinding:
    kind: RiskKind
    message: str
    severity: Severity
    evidence: Evidence

    def to_dict(self) -> Dict:
        return {
            "type": self.kind.value,
            "message": self.message,
            "severity": self.severity.value,
            "evidence": self.evidence.to_dict(),
        }

# ---------------------------- Decoder ----------------------------

def decode_approval(input_hex) -> Optional[DecodedApproval]:
    """
    Slices approve(address,uint256) call data without an ABI library:
      selector:4 | spender word:32 (address in the low 20 bytes) | amount:<rest>
    The amount is the whole remainder after the spender word, so overlong input
    is tolerated. Returns None when the input is not a decodable approval.
    """
    if not isinstance(input_hex, str):
        return None
    data = input_hex.lower()
    if not data.startswith(APPROVE_SELECTOR):
        return None
    params = data[SELECTOR_HEX_LEN:]
    if len(params) < 2 * WORD_HEX_LEN:
        return None
    return DecodedApproval(
        spender="0x" + params[ADDRESS_OFFSET:WORD_HEX_LEN],
        amount="0x" + params[WORD_HEX_LEN:],
    )

def strict_abi_check(input_hex: str) -> Optional[str]:
    """Decode the approval payload with eth-abi; returns the error text or None."""
    try:
        abi_decode(["address", "uint256"], bytes.fromhex(input_hex[SELECTOR_HEX_LEN:]))
    except Exception as e:
        return f"abi decode error: {e}"
    return None

# ---------------------------- Rules ----------------------------

AddressClassifier = Callable[[str], bool]

def suffix_eoa_classifier(suffix: str = DEFAULT_EOA_SUFFIX) -> AddressClassifier:
    """
    Placeholder account-vs-contract classifier: an address "is an EOA" when its
    lowercase hex ends with `suffix`. A real bytecode lookup needs chain access,
    which this tool does not have; swap in another classifier through
    ApprovalRiskEngine(is_eoa=...).
    """
    suffix = suffix.lower()

    def is_eoa(address: str) -> bool:
        return address.lower().endswith(suffix)

    return is_eoa

def is_infinite_amount(amount: str) -> bool:
    stripped = _LEADING_ZEROS.sub("0x", amount.lower())
    if stripped == "0x":
        return False
    if _ALL_F.fullmatch(stripped[2:]):
        return True
    return stripped == _LEADING_ZEROS.sub("0x", MAX_UINT256)

def count_approval_logs(logs: Sequence[Log]) -> int:
    return sum(1 for log in logs if log.topics and _lower(log.topics[0]) == APPROVE_SELECTOR)

def is_automated_approval(call: Call) -> bool:
    """True when the first nested call goes somewhere other than call.to; leaf calls are direct."""
    intermediary = _lower(call.to)
    approval_target = _lower(call.calls[0].to) if call.calls else intermediary
    return approval_target != intermediary

class ApprovalRiskEngine:
    """Evaluates one call-tree node against the approval rules. Stateless between calls."""

    def __init__(self, is_eoa: Optional[AddressClassifier] = None):
        self.is_eoa = is_eoa or suffix_eoa_classifier()
        self.rules: Tuple[Tuple[RiskKind, Callable[[DecodedApproval, Call, Sequence[Log]], bool]], ...] = (
            (RiskKind.INFINITE_APPROVAL, lambda a, call, logs: is_infinite_amount(a.amount)),
            (RiskKind.EOA_APPROVAL, lambda a, call, logs: self.is_eoa(a.spender)),
            (RiskKind.BATCH_APPROVAL, lambda a, call, logs: count_approval_logs(logs) > 1),
            (RiskKind.AUTOMATED_APPROVAL, lambda a, call, logs: is_automated_approval(call)),
        )

    def evaluate(self, call: Call, logs: Sequence[Log]) -> List[RiskFinding]:
        if not _lower(call.input).startswith(APPROVE_SELECTOR):
            return []
        approval = decode_approval(call.input)
        if approval is None:
            return []

        evidence = Evidence(from_=call.from_, to=approval.spender, value=approval.amount)
        findings: List[RiskFinding] = []
        for kind, triggered in self.rules:
            if triggered(approval, call, logs):
                severity, message = RISK_CATALOG[kind]
                findings.append(RiskFinding(kind, message, severity, evidence))
        return findings

# ---------------------------- Detection ----------------------------

class RequestError(ValueError):
    pass

@dataclass(frozen=True)
class DetectionRequest:
    chain_id: Optional[int]
    hash: str
    trace: Call
    logs: Tuple[Log, ...] = ()

    @classmethod
    def from_dict(cls, obj) -> "DetectionRequest":
        """
        Accepts either
          { "chainId": 1, "hash": "0x..", "trace": { <root call>, "calls": [...], "logs": [...] } }
        or the bare trace object itself.
        """
        if not isinstance(obj, dict):
            raise RequestError("Detection request must be a JSON object.")
        trace = obj["trace"] if "trace" in obj else obj
        if not isinstance(trace, dict):
            raise RequestError("\"trace\" must be a JSON object.")
        raw_logs = _items(trace.get("logs") or obj.get("logs"))
        return cls(
            chain_id=obj.get("chainId"),
            hash=_hex(obj.get("hash"), ""),
            trace=Call.from_dict(trace),
            logs=tuple(Log.from_dict(l) for l in raw_logs if isinstance(l, dict)),
        )

@dataclass(frozen=True)
class CallReport:
    index: int
    depth: int
    call: Call
    approval: Optional[DecodedApproval]
    findings: Tuple[RiskFinding, ...]

    def to_dict(self) -> Dict:
        return {
            "index": self.index,
            "depth": self.depth,
            "from": self.call.from_,
            "to": self.call.to,
            "approval": None if self.approval is None else
                {"spender": self.approval.spender, "amount": self.approval.amount},
            "findings": [f.to_dict() for f in self.findings],
        }

@dataclass(frozen=True)
class DetectionResponse:
    chain_id: Optional[int]
    hash: str
    calls: Tuple[CallReport, ...] = ()
    error: bool = False

    @property
    def findings(self) -> List[RiskFinding]:
        return [f for c in self.calls for f in c.findings]

    @property
    def detected(self) -> bool:
        return len(self.findings) > 0

    @property
    def message(self) -> Optional[str]:
        findings = self.findings
        if not findings:
            return None
        return f"Detected {len(findings)} approval risk(s): " + ", ".join(f.message for f in findings)

    def to_dict(self) -> Dict:
        return {
            "chainId": self.chain_id,
            "hash": self.hash,
            "detected": self.detected,
            "message": self.message,
            "error": self.error,
            "findings": [f.to_dict() for f in self.findings],
            "calls": [c.to_dict() for c in self.calls],
        }

def iter_calls(root: Call) -> Iterator[Tuple[int, int, Call]]:
    """Pre-order walk of the call tree: (index, depth, call), root first."""
    stack = [(0, root)]
    index = 0
    while stack:
        depth, call = stack.pop()
        yield index, depth, call
        index += 1
        stack.extend((depth + 1, c) for c in reversed(call.calls or ()))

def analyze_trace(request: DetectionRequest, engine: ApprovalRiskEngine) -> List[CallReport]:
    reports = []
    for index, depth, call in iter_calls(request.trace):
        findings = engine.evaluate(call, request.logs)
        if findings:
            logger.debug("call #%d %s -> %s: %s", index, call.from_, call.to,
                         ", ".join(f.kind.value for f in findings))
        reports.append(CallReport(index, depth, call, decode_approval(call.input), tuple(findings)))
    return reports

def detect(request: DetectionRequest, engine: Optional[ApprovalRiskEngine] = None) -> DetectionResponse:
    engine = engine or ApprovalRiskEngine()
    response = DetectionResponse(
        chain_id=request.chain_id,
        hash=request.hash,
        calls=tuple(analyze_trace(request, engine)),
    )
    logger.info("tx %s: %d calls, %d approval risk(s)",
                request.hash or "<unknown>", len(response.calls), len(response.findings))
    return response

# ---------------------------- Inputs ----------------------------

def load_request(source: str) -> DetectionRequest:
    """Reads a detection request from a JSON file path, or from stdin when source is '-'."""
    try:
        if source == "-":
            obj = json.load(sys.stdin)
        else:
            with open(source, "r", encoding="utf-8") as f:
                obj = json.load(f)
    except OSError as e:
        raise click.ClickException(f"Cannot read {source}: {e}")
    except json.JSONDecodeError as e:
        raise click.ClickException(f"Invalid JSON in {source}: {e}")
    except RecursionError:
        raise click.ClickException(f"JSON in {source} is nested too deeply to parse")
    try:
        return DetectionRequest.from_dict(obj)
    except RequestError as e:
        raise click.ClickException(str(e))

def display_address(address: str) -> str:
    return to_checksum_address(address) if is_hex_address(address) else address

# ---------------------------- CLI ----------------------------

@click.group(context_settings=dict(help_option_names=["-h", "--help"]))
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging.")
def cli(verbose):
    """approvalsentinel — ERC-20 approval risk checks for transaction traces (offline)."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(levelname)s:%(name)s:%(message)s",
    )

@cli.command("analyze")
@click.argument("input_arg", type=str)
@click.option("--json", "json_out", type=click.Path(writable=True), default=None, help="Write JSON report.")
@click.option("--pretty", is_flag=True, help="Prints a human-readable summary.")
@click.option("--eoa-suffix", envvar="APPROVALSENTINEL_EOA_SUFFIX", default=DEFAULT_EOA_SUFFIX,
              show_default=True, help="Address suffix treated as an EOA by the placeholder classifier.")
def analyze_cmd(input_arg, json_out, pretty, eoa_suffix):
    """Analyze a detection request JSON file ('-' reads stdin)."""
    request = load_request(input_arg)
    engine = ApprovalRiskEngine(is_eoa=suffix_eoa_classifier(eoa_suffix))
    response = detect(request, engine)
    report = response.to_dict()

    if pretty:
        verdict = "DETECTED" if response.detected else "clean"
        click.echo(f"approvalsentinel — tx {request.hash or '<unknown>'} (chain {request.chain_id}), "
                   f"{len(response.calls)} calls, {len(request.logs)} logs: {verdict}")
        for c in response.calls:
            if c.approval is None:
                continue
            click.echo(f"  [{c.index:02d}] {'  ' * c.depth}{c.call.from_} -> {c.call.to}  "
                       f"approve spender={display_address(c.approval.spender)} amount={c.approval.amount}")
            for f in c.findings:
                click.echo(f"       - {f.severity.value}: {f.kind.value}  {f.message}")
        if not response.detected:
            click.echo("  No risky approvals detected.")

    if json_out:
        with open(json_out, "w", encoding="utf-8") as f:
            json.dump(report, f, indent=2)
        click.echo(f"Wrote JSON report: {json_out}")

    if not (pretty or json_out):
        click.echo(json.dumps(report, indent=2))

@cli.command("decode")
@click.argument("input_hex", type=str)
def decode_cmd(input_hex):
    """Decode approve(address,uint256) call data."""
    approval = decode_approval(input_hex)
    if approval is None:
        raise click.ClickException(f"Not a decodable {APPROVE_SIGNATURE} input.")
    err = strict_abi_check(input_hex)
    click.echo(json.dumps({
        "signature": APPROVE_SIGNATURE,
        "spender": approval.spender,
        "amount": approval.amount,
        "infinite": is_infinite_amount(approval.amount),
        "abi_strict": err is None,
        "abi_error": err,
    }, indent=2))

if __name__ == "__main__":
    cli()
