"""
Monte Carlo Escalation Simulator.

Each trajectory is a discrete-event loop over a private WorldState:

    while elapsed < horizon and not nuclear_war_occurred:
        rates  = base_rate × state-dependent multipliers   (per day)
        dt     ~ Exponential(Σ rates)
        event  ~ Categorical(rates / Σ rates)
        state  = state.apply(event)                          (pure)

Event types and their base rates are configuration data (EventSpec
table), not control flow. Trajectories are independent: trajectory i
draws from numpy.random.default_rng([seed, i]), so the aggregate is the
same regardless of worker count or chunking. Per-chunk tallies are merged
with commutative, associative operations only (counts and multisets).
"""

import math
import os
from collections import Counter
from concurrent.futures import ProcessPoolExecutor
from dataclasses import dataclass, field, replace
from enum import Enum, IntEnum
from functools import reduce
from typing import Optional, Sequence

import numpy as np
import structlog

from joshua.config import Settings, settings as default_settings
from joshua.core.exceptions import ConfigurationError
from joshua.models.factor import RiskCategory, RiskFactor

logger = structlog.get_logger(__name__)

# ── Configuration ─────────────────────────────────────────────────────────

WILSON_Z: float = 1.96                    # 95% interval
TENSION_ESCALATION_FACTOR: float = 5.0    # escalatory rates × (1 + 5·tension)
ACTIVE_CONFLICT_THRESHOLD: float = 0.6    # regional factor value that counts as a live conflict
COMMUNICATION_DEGRADED_THRESHOLD: float = 0.5


class EscalationLevel(IntEnum):
    PEACE = 0
    TENSION = 1
    CRISIS = 2
    CONVENTIONAL_CONFLICT = 3
    NUCLEAR_THREAT = 4
    NUCLEAR_WAR = 5


class EventType(str, Enum):
    DIPLOMATIC_TALKS = "diplomatic_talks"
    CONFLICT_RESOLUTION = "conflict_resolution"
    ESCALATORY_RHETORIC = "escalatory_rhetoric"
    MILITARY_INCIDENT = "military_incident"
    TECHNICAL_FAILURE = "technical_failure"
    COMMUNICATION_BREAKDOWN = "communication_breakdown"
    NUCLEAR_USE = "nuclear_use"


@dataclass(frozen=True)
class EventEffect:
    """What an event does to the world."""
    tension_delta: float = 0.0
    escalation_delta: int = 0
    opens_conflict: bool = False
    resolves_conflict: bool = False
    communication: Optional[bool] = None    # True degrades, False restores
    nuclear_use: bool = False


@dataclass(frozen=True)
class EventSpec:
    """
    One row of the event table.

    base_rate is in events per day. escalatory rates scale with tension;
    the two multipliers apply while conflicts are active or communication
    channels are degraded.
    """
    event_type: EventType
    base_rate: float
    effect: EventEffect
    escalatory: bool = False
    conflict_multiplier: float = 1.0
    degraded_comms_multiplier: float = 1.0


DEFAULT_EVENT_TABLE: tuple[EventSpec, ...] = (
    EventSpec(
        EventType.DIPLOMATIC_TALKS, 0.06,
        EventEffect(tension_delta=-0.10, escalation_delta=-1, communication=False),
    ),
    EventSpec(
        EventType.CONFLICT_RESOLUTION, 0.01,
        EventEffect(tension_delta=-0.05, resolves_conflict=True),
    ),
    EventSpec(
        EventType.ESCALATORY_RHETORIC, 0.03,
        EventEffect(tension_delta=0.10),
        escalatory=True,
    ),
    EventSpec(
        EventType.MILITARY_INCIDENT, 0.004,
        EventEffect(tension_delta=0.15, escalation_delta=1, opens_conflict=True),
        escalatory=True, conflict_multiplier=3.0,
    ),
    EventSpec(
        EventType.TECHNICAL_FAILURE, 0.001,
        EventEffect(tension_delta=0.05, escalation_delta=1),
        degraded_comms_multiplier=2.0,
    ),
    EventSpec(
        EventType.COMMUNICATION_BREAKDOWN, 0.01,
        EventEffect(tension_delta=0.05, communication=True),
        escalatory=True,
    ),
    EventSpec(
        EventType.NUCLEAR_USE, 0.00005,
        EventEffect(nuclear_use=True),
        escalatory=True,
    ),
)


@dataclass(frozen=True)
class Event:
    event_type: EventType
    time: float              # elapsed days at occurrence
    time_delta: float        # days since the previous event
    effect: EventEffect


@dataclass(frozen=True)
class WorldState:
    """Immutable snapshot of the simulated world; apply() returns a new one."""
    tension_level: float = 0.0
    active_conflicts: frozenset[str] = frozenset()
    communication_degraded: bool = False
    escalation_level: EscalationLevel = EscalationLevel.PEACE
    nuclear_war_occurred: bool = False

    def __post_init__(self):
        object.__setattr__(self, "tension_level", min(1.0, max(0.0, float(self.tension_level))))
        object.__setattr__(self, "active_conflicts", frozenset(self.active_conflicts))
        object.__setattr__(self, "escalation_level", EscalationLevel(self.escalation_level))

    @property
    def is_terminal(self) -> bool:
        return self.nuclear_war_occurred

    def apply(self, event: Event) -> "WorldState":
        effect = event.effect
        conflicts = set(self.active_conflicts)
        if effect.opens_conflict:
            conflicts.add(f"{event.event_type.value}@{event.time:.4f}")
        if effect.resolves_conflict and conflicts:
            conflicts.remove(min(conflicts))

        if effect.nuclear_use:
            level = EscalationLevel.NUCLEAR_WAR
        else:
            level = EscalationLevel(min(
                EscalationLevel.NUCLEAR_WAR,
                max(EscalationLevel.PEACE, self.escalation_level + effect.escalation_delta),
            ))

        return replace(
            self,
            tension_level=self.tension_level + effect.tension_delta,
            active_conflicts=frozenset(conflicts),
            communication_degraded=(
                self.communication_degraded if effect.communication is None else effect.communication
            ),
            escalation_level=level,
            nuclear_war_occurred=self.nuclear_war_occurred or level is EscalationLevel.NUCLEAR_WAR,
        )


@dataclass(frozen=True)
class Outcome:
    """Result of one trajectory."""
    final_state: WorldState
    events: tuple[Event, ...]
    time_to_war: Optional[float] = None

    @property
    def nuclear_war(self) -> bool:
        return self.final_state.nuclear_war_occurred


@dataclass
class SimulationTally:
    """Mergeable per-chunk statistics. merge() is commutative and associative."""
    iterations: int = 0
    war_count: int = 0
    war_times: list[float] = field(default_factory=list)
    final_levels: Counter = field(default_factory=Counter)
    event_counts: Counter = field(default_factory=Counter)

    def add(self, outcome: Outcome) -> None:
        self.iterations += 1
        if outcome.nuclear_war:
            self.war_count += 1
            self.war_times.append(outcome.time_to_war)
        self.final_levels[outcome.final_state.escalation_level.name] += 1
        self.event_counts.update(e.event_type.value for e in outcome.events)

    def merge(self, other: "SimulationTally") -> "SimulationTally":
        return SimulationTally(
            iterations=self.iterations + other.iterations,
            war_count=self.war_count + other.war_count,
            war_times=sorted(self.war_times + other.war_times),
            final_levels=self.final_levels + other.final_levels,
            event_counts=self.event_counts + other.event_counts,
        )


@dataclass(frozen=True)
class SimulationResults:
    """Aggregate of all trajectories."""
    iterations: int
    time_horizon: float
    seed: int
    nuclear_war_probability: float
    confidence_interval: tuple[float, float]
    war_count: int
    mean_time_to_war: Optional[float]
    median_time_to_war: Optional[float]
    escalation_distribution: dict[str, float]
    mean_events_per_trajectory: dict[str, float]


def wilson_interval(successes: int, n: int, z: float = WILSON_Z) -> tuple[float, float]:
    """Wilson score interval for a binomial proportion."""
    if n <= 0:
        return (0.0, 1.0)
    p = successes / n
    z2 = z * z
    denom = 1.0 + z2 / n
    centre = (p + z2 / (2 * n)) / denom
    half = z * math.sqrt(p * (1 - p) / n + z2 / (4 * n * n)) / denom
    return (max(0.0, centre - half), min(1.0, centre + half))


def initial_state_from_factors(factors: Sequence[RiskFactor]) -> WorldState:
    """
    Derive the starting world from the current factors.

    Tension is the confidence-weighted mean of all factor values; regional
    factors above the conflict threshold count as active conflicts and the
    communication category decides whether channels start degraded.
    """
    num = den = 0.0
    comms_num = comms_den = 0.0
    conflicts = set()
    for f in factors:
        c = f.confidence_multiplier
        match f.category:
            case RiskCategory.REGIONAL_CONFLICTS:
                if f.value >= ACTIVE_CONFLICT_THRESHOLD:
                    conflicts.add(f.name)
            case RiskCategory.COMMUNICATION_BREAKDOWN:
                comms_num += c * f.value
                comms_den += c
            case _:
                pass
        w = f.category.default_weight * c
        num += w * f.value
        den += w

    tension = num / den if den > 0 else 0.0
    level = EscalationLevel(min(int(tension * 4), EscalationLevel.NUCLEAR_THREAT))
    return WorldState(
        tension_level=tension,
        active_conflicts=frozenset(conflicts),
        communication_degraded=comms_den > 0 and comms_num / comms_den >= COMMUNICATION_DEGRADED_THRESHOLD,
        escalation_level=level,
    )


def validate_event_table(table: Sequence[EventSpec]) -> tuple[EventSpec, ...]:
    if not table:
        raise ConfigurationError("event table is empty", config_key="event_table")
    seen = set()
    for spec in table:
        if spec.event_type in seen:
            raise ConfigurationError(f"duplicate event type {spec.event_type.value}", config_key="event_table")
        seen.add(spec.event_type)
        if not (spec.base_rate >= 0 and math.isfinite(spec.base_rate)):
            raise ConfigurationError(
                f"base rate for {spec.event_type.value} must be a finite non-negative number",
                config_key="event_table",
            )
        if spec.conflict_multiplier < 0 or spec.degraded_comms_multiplier < 0:
            raise ConfigurationError(
                f"multipliers for {spec.event_type.value} must be non-negative",
                config_key="event_table",
            )
    return tuple(table)


def event_rates(table: Sequence[EventSpec], state: WorldState) -> np.ndarray:
    """Per-day rates for every event type given the current state."""
    rates = np.empty(len(table))
    for i, spec in enumerate(table):
        rate = spec.base_rate
        if spec.escalatory:
            rate *= 1.0 + TENSION_ESCALATION_FACTOR * state.tension_level
        if state.active_conflicts:
            rate *= spec.conflict_multiplier
        if state.communication_degraded:
            rate *= spec.degraded_comms_multiplier
        rates[i] = rate
    return rates


def run_trajectory(
    table: Sequence[EventSpec],
    initial_state: WorldState,
    time_horizon: float,
    rng: np.random.Generator,
) -> Outcome:
    state = initial_state
    events: list[Event] = []
    elapsed = 0.0
    while elapsed < time_horizon and not state.is_terminal:
        rates = event_rates(table, state)
        total = rates.sum()
        if total <= 0:
            break
        dt = rng.exponential(1.0 / total)
        if elapsed + dt > time_horizon:
            break
        elapsed += dt
        idx = int(np.searchsorted(np.cumsum(rates), rng.random() * total, side="right"))
        spec = table[min(idx, len(table) - 1)]
        event = Event(event_type=spec.event_type, time=elapsed, time_delta=dt, effect=spec.effect)
        state = state.apply(event)
        events.append(event)

    return Outcome(
        final_state=state,
        events=tuple(events),
        time_to_war=elapsed if state.nuclear_war_occurred else None,
    )


def _run_chunk(
    table: tuple[EventSpec, ...],
    initial_state: WorldState,
    time_horizon: float,
    seed: int,
    start: int,
    stop: int,
) -> SimulationTally:
    tally = SimulationTally()
    for i in range(start, stop):
        rng = np.random.default_rng([seed, i])
        tally.add(run_trajectory(table, initial_state, time_horizon, rng))
    return tally


class MonteCarloSimulator:
    """
    Parallel map-reduce over trajectory indices.

    max_workers=1 runs inline in the calling process.
    """

    def __init__(
        self,
        config: Optional[Settings] = None,
        event_table: Optional[Sequence[EventSpec]] = None,
        max_workers: Optional[int] = None,
    ):
        self.config = config or default_settings
        self.event_table = validate_event_table(event_table if event_table is not None else DEFAULT_EVENT_TABLE)
        self.max_workers = max_workers or self.config.simulation_workers or os.cpu_count() or 1

    def simulate(
        self,
        initial_state: WorldState,
        time_horizon: Optional[float] = None,
        iterations: Optional[int] = None,
        seed: Optional[int] = None,
    ) -> SimulationResults:
        horizon = float(time_horizon if time_horizon is not None else self.config.simulation_horizon_days)
        n = int(iterations if iterations is not None else self.config.simulation_iterations)
        if n < 1:
            raise ConfigurationError(f"iterations must be >= 1, got {n}", config_key="simulation_iterations")
        if seed is None:
            seed = self.config.random_seed
        if seed is None:
            seed = int(np.random.SeedSequence().entropy % (2 ** 63))

        size = self.config.simulation_chunk_size
        chunks = [(start, min(start + size, n)) for start in range(0, n, size)]
        workers = min(self.max_workers, len(chunks))

        if workers <= 1:
            tallies = [
                _run_chunk(self.event_table, initial_state, horizon, seed, start, stop)
                for start, stop in chunks
            ]
        else:
            with ProcessPoolExecutor(max_workers=workers) as pool:
                futures = [
                    pool.submit(_run_chunk, self.event_table, initial_state, horizon, seed, start, stop)
                    for start, stop in chunks
                ]
                tallies = [f.result() for f in futures]

        tally = reduce(SimulationTally.merge, tallies, SimulationTally())
        results = self._summarize(tally, horizon, seed)
        logger.info(
            "monte_carlo_complete",
            iterations=results.iterations,
            workers=workers,
            war_probability=round(results.nuclear_war_probability, 6),
            ci_lower=round(results.confidence_interval[0], 6),
            ci_upper=round(results.confidence_interval[1], 6),
        )
        return results

    @staticmethod
    def _summarize(tally: SimulationTally, horizon: float, seed: int) -> SimulationResults:
        n = tally.iterations
        war_times = sorted(tally.war_times)
        return SimulationResults(
            iterations=n,
            time_horizon=horizon,
            seed=seed,
            nuclear_war_probability=tally.war_count / n,
            confidence_interval=wilson_interval(tally.war_count, n),
            war_count=tally.war_count,
            mean_time_to_war=math.fsum(war_times) / len(war_times) if war_times else None,
            median_time_to_war=float(np.median(war_times)) if war_times else None,
            escalation_distribution={
                level.name: tally.final_levels.get(level.name, 0) / n for level in EscalationLevel
            },
            mean_events_per_trajectory={
                t.value: tally.event_counts.get(t.value, 0) / n for t in EventType
            },
        )
