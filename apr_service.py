#!/usr/bin/env python3
"""
APR Module for LP Ledger Sync
Rebuilds a position's fee APR periods from its ledger.

The ledger is cut at every COLLECT: a collect closes the running period and
opens the next one. Each period gets a time-weighted average cost basis, the
quote value of the fees collected inside it, and an annualized return in
basis points.

Version: 2.0.0
Developer: 8roku8.hl
"""

from constants import COLLECT, SECONDS_PER_YEAR, BASIS_POINTS_MULTIPLIER
from errors import InvariantViolationError
from logger import get_logger


def calculate_apr_bps(collected_fee_value, cost_basis, duration_seconds):
    """Annualized fee return in basis points (floor)"""
    if cost_basis <= 0:
        raise InvariantViolationError("Cost basis must be positive")
    if duration_seconds <= 0:
        raise InvariantViolationError("Duration must be positive")
    if collected_fee_value < 0:
        raise InvariantViolationError("Collected fee value cannot be negative")
    if collected_fee_value == 0:
        return 0
    numerator = collected_fee_value * SECONDS_PER_YEAR * BASIS_POINTS_MULTIPLIER
    return numerator // (cost_basis * duration_seconds)


def calculate_duration_seconds(start, end):
    seconds = int((end - start).total_seconds())
    if seconds < 0:
        raise InvariantViolationError("End timestamp must be after start timestamp")
    return seconds


def calculate_time_weighted_cost_basis(events):
    """Average of cost_basis_after weighted by how long each value was held.

    A period whose events all share one timestamp has no duration to weight
    by; its cost basis is that of the last event.
    """
    if not events:
        raise InvariantViolationError("Cannot average the cost basis of an empty period")
    if len(events) == 1:
        return events[0].cost_basis_after

    weighted_sum = 0
    total_seconds = 0
    for current, following in zip(events, events[1:]):
        seconds = calculate_duration_seconds(current.timestamp, following.timestamp)
        weighted_sum += current.cost_basis_after * seconds
        total_seconds += seconds
    if total_seconds == 0:
        return events[-1].cost_basis_after
    return weighted_sum // total_seconds


def divide_events_into_periods(events):
    """Split ascending events at COLLECTs; a COLLECT ends one period and starts the next"""
    periods = []
    current = []
    for event in events:
        current.append(event)
        if event.event_type == COLLECT:
            periods.append(current)
            current = [event]

    # A lone carried-over COLLECT is not a period of its own
    if current and (not periods or len(current) > 1):
        periods.append(current)
    return periods


class AprService:
    """Per-position APR period store"""

    def __init__(self, database):
        self.database = database
        self.log = get_logger("AprService")

    def build_apr_period(self, position_id, events, starts_at_collect=False):
        """Metrics for one period.

        When the period opens with the COLLECT that closed the previous one,
        that collect's fees already belong to the previous period.
        """
        start_event = events[0]
        end_event = events[-1]
        counted = events[1:] if starts_at_collect else events
        collected_fee_value = sum(
            event.reward_value for event in counted if event.event_type == COLLECT
        )
        cost_basis = calculate_time_weighted_cost_basis(events)

        try:
            duration_seconds = calculate_duration_seconds(start_event.timestamp, end_event.timestamp)
            apr_bps = calculate_apr_bps(collected_fee_value, cost_basis, duration_seconds)
        except InvariantViolationError as e:
            self.log.warning("Failed to calculate APR, defaulting to 0", position_id=position_id,
                             start_event_id=start_event.id, end_event_id=end_event.id, error=e)
            duration_seconds = max(0, int((end_event.timestamp - start_event.timestamp).total_seconds()))
            apr_bps = 0

        return {
            "start_event_id": start_event.id,
            "end_event_id": end_event.id,
            "start_timestamp": start_event.timestamp,
            "end_timestamp": end_event.timestamp,
            "duration_seconds": duration_seconds,
            "cost_basis": cost_basis,
            "collected_fee_value": collected_fee_value,
            "apr_bps": apr_bps,
            "event_count": len(events),
        }

    def calculate_apr_periods(self, position_id):
        """Delete and rebuild all periods; returns them newest first"""
        events = self.database.get_ledger_events(position_id, descending=False)
        if not events:
            self.database.replace_apr_periods(position_id, [])
            self.log.debug("No ledger events, skipping APR calculation", position_id=position_id)
            return []

        periods = []
        for index, period_events in enumerate(divide_events_into_periods(events)):
            periods.append(self.build_apr_period(position_id, period_events, starts_at_collect=index > 0))

        self.database.replace_apr_periods(position_id, periods)
        self.log.debug("APR periods rebuilt", position_id=position_id, periods=len(periods))
        return self.database.get_apr_periods(position_id)

    def refresh(self, position_id):
        return self.calculate_apr_periods(position_id)

    def get_apr_periods(self, position_id):
        return self.database.get_apr_periods(position_id)

    def get_current_apr(self, position_id):
        """APR of the newest period in bps, or None"""
        periods = self.get_apr_periods(position_id)
        if not periods:
            return None
        return periods[0]["apr_bps"]

    def get_average_apr(self, position_id):
        """Arithmetic mean of period APRs in bps, or None"""
        periods = self.get_apr_periods(position_id)
        if not periods:
            return None
        return round(sum(period["apr_bps"] for period in periods) / len(periods))
