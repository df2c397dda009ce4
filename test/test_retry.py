"""
Tests for the retry policy.
"""

import pytest

from scheduler_service.jobs.models import DeadLetterCategory, DeliveryOutcome, ProcessingAction
from scheduler_service.jobs.retry import RetryPolicy


@pytest.fixture
def policy():
    return RetryPolicy(max_retries=3, base_delay=2.0, max_delay=10.0)


def test_get_delay_is_exponential_and_capped(policy):
    assert [policy.get_delay(a) for a in range(5)] == [2.0, 4.0, 8.0, 10.0, 10.0]


def test_success_acks_regardless_of_attempt(policy):
    for attempt in (0, 3, 7):
        assert policy.decide(attempt, DeliveryOutcome.success()).action is ProcessingAction.ACK


def test_transient_below_max_retries_requeues_with_next_attempt(policy):
    decision = policy.decide(1, DeliveryOutcome.transient("timeout"))

    assert decision.action is ProcessingAction.RETRY
    assert decision.next_attempt == 2
    assert decision.delay_seconds == 4.0
    assert decision.dead_letter_category is None


def test_transient_at_max_retries_dead_letters(policy):
    decision = policy.decide(3, DeliveryOutcome.transient("timeout"))

    assert decision.action is ProcessingAction.DEAD_LETTER
    assert decision.dead_letter_category is DeadLetterCategory.RETRIES_EXHAUSTED
    assert decision.next_attempt is None


def test_permanent_dead_letters_on_first_attempt(policy):
    decision = policy.decide(0, DeliveryOutcome.permanent("bad recipient"))

    assert decision.action is ProcessingAction.DEAD_LETTER
    assert decision.dead_letter_category is DeadLetterCategory.PERMANENT_FAILURE


def test_zero_max_retries_never_retries():
    policy = RetryPolicy(max_retries=0)

    decision = policy.decide(0, DeliveryOutcome.transient("timeout"))

    assert decision.action is ProcessingAction.DEAD_LETTER


def test_from_settings(make_settings):
    settings = make_settings(max_retries=5, retry_base_delay_seconds=1, retry_max_delay_seconds=60)

    policy = RetryPolicy.from_settings(settings)

    assert policy.max_retries == 5
    assert policy.get_delay(10) == 60
