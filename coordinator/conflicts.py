"""
Decision Core — Conflict Detector

Pure function over a proposal set. Rules, per pair of proposals:

  1. direct    same variable, deltas of opposite sign, each |Δ| > ε
  2. resource  same variable, same-sign deltas (each |Δ| > ε) whose
               combined magnitude exceeds the variable's ceiling, or
               target setpoints that differ by more than ε
  3. priority  different urgency, variables in the same declared
               subsystem (a variable always shares one with itself),
               and no direct/resource conflict already links the pair
  4. indirect  one proposal's constraints name a variable the other
               changes (|Δ| > ε) and the constraining proposal does
               not itself target

Proposals touching disjoint, independent variables never conflict.
Output is sorted canonically, so any permutation of the input yields
the identical list.
"""

from __future__ import annotations

import itertools
from dataclasses import dataclass, field
from typing import Any, Iterable

from coordinator.types import Conflict, ConflictType, Proposal, Severity, Urgency

DEFAULT_EPSILON = 0.01

_BASE_SEVERITY = {
    ConflictType.DIRECT.value: Severity.HIGH.value,
    ConflictType.RESOURCE.value: Severity.MEDIUM.value,
    ConflictType.INDIRECT.value: Severity.MEDIUM.value,
    ConflictType.PRIORITY.value: Severity.LOW.value,
}

_TYPE_ORDER = {
    ConflictType.DIRECT.value: 0,
    ConflictType.RESOURCE.value: 1,
    ConflictType.PRIORITY.value: 2,
    ConflictType.INDIRECT.value: 3,
}


@dataclass
class DetectorConfig:
    epsilon: float = DEFAULT_EPSILON
    # control_variable → max combined same-direction adjustment
    ceilings: dict[str, float] = field(default_factory=dict)
    # control_variable → subsystem group
    subsystems: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_config(cls, cfg: dict[str, Any] | None) -> DetectorConfig:
        """
        Config format:
            conflicts:
              epsilon: 0.01
              ceilings: {kiln_speed: 0.2}
              subsystems: {kiln_speed: kiln, fuel_flow: kiln}
        """
        cfg = cfg or {}
        return cls(
            epsilon=float(cfg.get("epsilon", DEFAULT_EPSILON)),
            ceilings={k: float(v) for k, v in (cfg.get("ceilings") or {}).items()},
            subsystems=dict(cfg.get("subsystems") or {}),
        )


def net_deltas(proposal: Proposal) -> dict[str, float]:
    """control_variable → summed delta across the proposal's actions."""
    deltas: dict[str, float] = {}
    for action in proposal.actions:
        deltas[action.control_variable] = deltas.get(action.control_variable, 0.0) + action.delta
    return deltas


def targets(proposal: Proposal) -> dict[str, float]:
    """control_variable → setpoint the proposal asks for."""
    return {a.control_variable: a.proposed_value for a in proposal.actions}


def _severity(conflict_type: str, pair: Iterable[Proposal]) -> str:
    if any(p.urgency == Urgency.CRITICAL.value for p in pair):
        return Severity.CRITICAL.value
    return _BASE_SEVERITY[conflict_type]


def _conflict(conflict_type: str, a: Proposal, b: Proposal, variables, description: str) -> Conflict:
    return Conflict(
        type=conflict_type,
        severity=_severity(conflict_type, (a, b)),
        involved_proposal_ids=sorted([a.proposal_id, b.proposal_id]),
        control_variables=sorted(set(variables)),
        description=description,
    )


def detect_pair(a: Proposal, b: Proposal, config: DetectorConfig) -> list[Conflict]:
    """All conflicts between two proposals; a must sort before b."""
    eps = config.epsilon
    da, db = net_deltas(a), net_deltas(b)
    ta, tb = targets(a), targets(b)
    found: list[Conflict] = []
    linked = False

    for var in sorted(da.keys() & db.keys()):
        x, y = da[var], db[var]
        moving = abs(x) > eps and abs(y) > eps
        if moving and (x > 0) != (y > 0):
            linked = True
            found.append(_conflict(
                ConflictType.DIRECT.value, a, b, [var],
                f"{a.proposer_id} moves {var} by {x:+g}, {b.proposer_id} by {y:+g}",
            ))
        elif moving and var in config.ceilings and abs(x) + abs(y) > config.ceilings[var]:
            linked = True
            found.append(_conflict(
                ConflictType.RESOURCE.value, a, b, [var],
                f"combined {var} adjustment {abs(x) + abs(y):g} exceeds ceiling "
                f"{config.ceilings[var]:g}",
            ))
        elif abs(ta[var] - tb[var]) > eps:
            # Commands are absolute setpoints; only one of them can stick
            linked = True
            found.append(_conflict(
                ConflictType.RESOURCE.value, a, b, [var],
                f"{a.proposer_id} sets {var} to {ta[var]:g}, {b.proposer_id} to {tb[var]:g}",
            ))

    if a.urgency != b.urgency and not linked:
        shared = set()
        for va, vb in itertools.product(sorted(da), sorted(db)):
            group = config.subsystems.get(va)
            if va == vb or (group is not None and group == config.subsystems.get(vb)):
                shared.update((va, vb))
        if shared:
            found.append(_conflict(
                ConflictType.PRIORITY.value, a, b, shared,
                f"{a.proposer_id} ({a.urgency}) and {b.proposer_id} ({b.urgency}) "
                f"adjust the same subsystem",
            ))

    for constraining, other, other_deltas in ((a, b, db), (b, a, da)):
        touched = [
            v for v in constraining.constraints
            if abs(other_deltas.get(v, 0.0)) > eps and v not in constraining.variables
        ]
        if touched:
            found.append(_conflict(
                ConflictType.INDIRECT.value, a, b, touched,
                f"{constraining.proposer_id} depends on {', '.join(sorted(set(touched)))} "
                f"which {other.proposer_id} changes",
            ))

    return found


def sort_key(conflict: Conflict) -> tuple:
    return (
        _TYPE_ORDER[conflict.type],
        tuple(conflict.involved_proposal_ids),
        tuple(conflict.control_variables),
        conflict.description,
    )


def detect(proposals: list[Proposal], config: DetectorConfig | None = None) -> list[Conflict]:
    """Every pairwise conflict in the set, in canonical order."""
    config = config or DetectorConfig()
    ordered = sorted(proposals, key=lambda p: (p.proposal_id, p.proposer_id))
    conflicts: list[Conflict] = []
    for a, b in itertools.combinations(ordered, 2):
        conflicts.extend(detect_pair(a, b, config))
    return sorted(conflicts, key=sort_key)


def conflicting_pairs(conflicts: list[Conflict], types: Iterable[str]) -> set[frozenset[str]]:
    """Proposal-id pairs linked by any conflict of the given types."""
    wanted = set(types)
    return {
        frozenset(c.involved_proposal_ids)
        for c in conflicts
        if c.type in wanted
    }
