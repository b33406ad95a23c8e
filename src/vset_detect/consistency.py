"""
Consistency Checker

Compares a consumer chain's validator set changes against the provider's.
Every consumer event after the provider epoch is classified as one of:

- missing: the provider never had a validator set with this content hash
- not yet existed: the provider only had it at or after the consumer's time
- out of order: the consumer's previous set does not precede the new one on
  the provider
- consistent: none of the above

Consumer events older than the provider's first event are excluded, since the
provider history says nothing about them.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional, Sequence, Tuple

from .changelog import ValidatorSetChangeEvent

logger = logging.getLogger(__name__)


class ConsistencyError(Exception):
    """Exception raised when the provider history cannot be used for a check."""
    pass


@dataclass
class ConsistencyReport:
    """Consumer events grouped by classification."""
    provider_epoch: datetime
    consistent: List[ValidatorSetChangeEvent] = field(default_factory=list)
    missing: List[ValidatorSetChangeEvent] = field(default_factory=list)
    not_yet_existed: List[ValidatorSetChangeEvent] = field(default_factory=list)
    out_of_order: List[ValidatorSetChangeEvent] = field(default_factory=list)
    excluded: List[ValidatorSetChangeEvent] = field(default_factory=list)

    @property
    def missing_count(self) -> int:
        return len(self.missing)

    @property
    def not_yet_existed_count(self) -> int:
        return len(self.not_yet_existed)

    @property
    def out_of_order_count(self) -> int:
        return len(self.out_of_order)

    @property
    def checked_count(self) -> int:
        return len(self.consistent) + self.missing_count + self.not_yet_existed_count + self.out_of_order_count

    @property
    def ok(self) -> bool:
        return not (self.missing or self.not_yet_existed or self.out_of_order)

    def counts(self) -> Dict[str, int]:
        return {
            "missing": self.missing_count,
            "not_yet_existed": self.not_yet_existed_count,
            "out_of_order": self.out_of_order_count,
        }


def exists_before_timestamp(provider_events: Sequence[ValidatorSetChangeEvent], content_hash: str,
                            timestamp: datetime) -> bool:
    """Return True if any provider event has ``content_hash`` strictly before ``timestamp``."""
    for event in provider_events:
        if event.content_hash == content_hash and event.timestamp < timestamp:
            return True
    return False


def _first_indexes(provider_events: Sequence[ValidatorSetChangeEvent], event: ValidatorSetChangeEvent,
                   unset: Optional[int]) -> Tuple[Optional[int], Optional[int]]:
    # An index still equal to ``unset`` keeps searching, so with ``unset=0``
    # a match at index 0 is replaced by a later match of the same hash.
    previous_index = unset
    current_index = unset

    for i, provider_event in enumerate(provider_events):
        if provider_event.timestamp > event.timestamp:
            break
        if current_index == unset and provider_event.content_hash == event.content_hash:
            current_index = i
        if previous_index == unset and provider_event.content_hash == event.old_content_hash:
            previous_index = i

    return previous_index, current_index


def find_transition_indexes(provider_events: Sequence[ValidatorSetChangeEvent],
                            event: ValidatorSetChangeEvent) -> Tuple[Optional[int], Optional[int]]:
    """
    Locate the consumer transition's two sets on the provider.

    Only provider events up to ``event.timestamp`` (inclusive) are searched.

    Returns:
        Tuple of (previous_index, current_index): the index of the first
        provider event carrying ``event.old_content_hash`` and of the first one
        carrying ``event.content_hash``, None where not found
    """
    return _first_indexes(provider_events, event, unset=None)


def is_in_order(provider_events: Sequence[ValidatorSetChangeEvent], event: ValidatorSetChangeEvent,
                strict: bool = False) -> bool:
    """
    Check that the consumer's previous set precedes its new set on the provider.

    An event without a previous set is always in order. By default a set not
    found on the provider counts as index 0, the start of the sequence, so
    e.g. an unknown previous set followed by a known current set reads as in
    order. With ``strict`` the real first indexes are compared and a set not
    found makes the event out of order.
    """
    if not event.old_content_hash:
        return True

    if not strict:
        previous_index, current_index = _first_indexes(provider_events, event, unset=0)
        return previous_index < current_index

    previous_index, current_index = find_transition_indexes(provider_events, event)
    if previous_index is None or current_index is None:
        return False
    return previous_index < current_index


def check_consistency(provider_events: Sequence[ValidatorSetChangeEvent],
                      consumer_events: Sequence[ValidatorSetChangeEvent],
                      strict: bool = False) -> ConsistencyReport:
    """
    Classify every consumer event against the provider history.

    Args:
        provider_events: Provider changelog in height order
        consumer_events: Consumer changelog in height order
        strict: Treat a set absent from the searched provider prefix as out of
            order instead of as index 0

    Raises:
        ConsistencyError: If the provider changelog is empty
    """
    if not provider_events:
        raise ConsistencyError("provider changelog is empty, nothing to compare against")

    provider_epoch = provider_events[0].timestamp
    report = ConsistencyReport(provider_epoch=provider_epoch)

    first_seen: Dict[str, ValidatorSetChangeEvent] = {}
    for event in provider_events:
        first_seen.setdefault(event.content_hash, event)

    for event in consumer_events:
        if event.timestamp < provider_epoch:
            # provider was not observed yet
            report.excluded.append(event)
            continue

        if event.content_hash not in first_seen:
            report.missing.append(event)
            logger.info(
                f"[missing] Found consumer validator hash {event.validators_hash} at block {event.height}, "
                f"missing from provider"
            )
            continue

        if not exists_before_timestamp(provider_events, event.content_hash, event.timestamp):
            report.not_yet_existed.append(event)
            logger.info(
                f"[not existed] Found consumer validator hash {event.validators_hash} at block {event.height}, "
                f"not existed on provider at that time (first seen at provider block "
                f"{first_seen[event.content_hash].height})"
            )
            continue

        if not is_in_order(provider_events, event, strict=strict):
            report.out_of_order.append(event)
            logger.info(
                f"[out of order] Found consumer validator hash {event.validators_hash}, "
                f"old validator hash {event.old_validators_hash} at block {event.height}"
            )
            continue

        report.consistent.append(event)

    logger.info(f"Found {report.missing_count} missing validator hashes")
    logger.info(f"Found {report.not_yet_existed_count} not existed on provider chain at that time")
    logger.info(f"Found {report.out_of_order_count} out of order validator hashes")

    return report
