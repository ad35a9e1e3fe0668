import pytest

from homebot.config.schema import ReconnectConfig
from homebot.core.models import RetryAction
from homebot.core.policy import DisconnectReason, ReconnectPolicy, describe_close


@pytest.mark.parametrize(
    ("code", "reason", "expected"),
    [
        (401, "", RetryAction.CLEAR_CREDENTIALS_AND_RETRY),
        (500, "bad session", RetryAction.CLEAR_CREDENTIALS_AND_RETRY),
        (440, "", RetryAction.RETRY_AFTER_COOLDOWN),
        (None, "Stream Errored (conflict)", RetryAction.RETRY_AFTER_COOLDOWN),
        (515, "", RetryAction.RETRY_IMMEDIATE),
        (408, "timed out", RetryAction.RETRY_WITH_BACKOFF),
        (428, "", RetryAction.RETRY_WITH_BACKOFF),
        (503, "", RetryAction.RETRY_WITH_BACKOFF),
        (None, "", RetryAction.RETRY_WITH_BACKOFF),
        (999, "", RetryAction.RETRY_WITH_BACKOFF),
    ],
)
def test_classify_close(code: int | None, reason: str, expected: RetryAction) -> None:
    assert ReconnectPolicy().classify(code, reason) == expected


def test_backoff_is_monotonic_and_capped() -> None:
    policy = ReconnectPolicy(base_delay_s=5.0, multiplier=1.5, max_delay_s=120.0)
    delays = [policy.backoff_delay(n) for n in range(1, 40)]

    assert delays[0] == 5.0
    assert delays[1] == 7.5
    assert delays == sorted(delays)
    assert max(delays) == 120.0


def test_backoff_survives_huge_attempt_counts() -> None:
    policy = ReconnectPolicy()
    assert policy.backoff_delay(10_000) == policy.max_delay_s
    assert policy.backoff_delay(0) == policy.base_delay_s


def test_delay_for_each_action() -> None:
    policy = ReconnectPolicy(conflict_cooldown_s=60.0, immediate_delay_s=1.0, credential_reset_delay_s=5.0)

    assert policy.delay_for(RetryAction.RETRY_AFTER_COOLDOWN, 1) == 60.0
    assert policy.delay_for(RetryAction.RETRY_AFTER_COOLDOWN, 9) == 60.0
    assert policy.delay_for(RetryAction.RETRY_IMMEDIATE, 3) == 1.0
    assert policy.delay_for(RetryAction.CLEAR_CREDENTIALS_AND_RETRY, 3) == 5.0
    assert policy.delay_for(RetryAction.RETRY_WITH_BACKOFF, 2) == policy.backoff_delay(2)


def test_from_config_copies_all_fields() -> None:
    config = ReconnectConfig(base_delay_s=2.0, multiplier=3.0, max_delay_s=30.0, conflict_cooldown_s=90.0)
    policy = ReconnectPolicy.from_config(config)

    assert policy.base_delay_s == 2.0
    assert policy.multiplier == 3.0
    assert policy.max_delay_s == 30.0
    assert policy.conflict_cooldown_s == 90.0


def test_reconnect_config_rejects_cap_below_base() -> None:
    with pytest.raises(ValueError):
        ReconnectConfig(base_delay_s=10.0, max_delay_s=5.0)


def test_describe_close() -> None:
    assert describe_close(DisconnectReason.CONNECTION_REPLACED, "conflict") == "connection replaced / 440 / conflict"
    assert describe_close(None, "") == "unknown"
    assert describe_close(777, "") == "777"
