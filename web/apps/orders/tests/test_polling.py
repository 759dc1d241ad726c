from apps.orders.payments import PaymentState, PollOutcome, PollResult, wait_for_payment


class FakeClock:
    def __init__(self):
        self.now = 0.0
        self.sleeps = []

    def __call__(self):
        return self.now

    def sleep(self, secs):
        self.sleeps.append(secs)
        self.now += secs


def scripted(*states):
    """Poll callable returning ``states`` in order, then the last one forever."""
    calls = {"n": 0}

    def poll():
        state = states[min(calls["n"], len(states) - 1)]
        calls["n"] += 1
        return PollResult("PAYX", state, "pending")

    return poll


def test_stops_on_success():
    clock = FakeClock()
    result = wait_for_payment(
        scripted(PaymentState.PENDING, PaymentState.PENDING, PaymentState.SUCCEEDED),
        sleep=clock.sleep,
        clock=clock,
    )
    assert result.outcome is PollOutcome.SUCCEEDED
    assert result.polls == 3
    assert clock.sleeps == [2.0, 2.0]


def test_stops_on_failure_without_sleeping():
    clock = FakeClock()
    result = wait_for_payment(scripted(PaymentState.FAILED), sleep=clock.sleep, clock=clock)
    assert result.outcome is PollOutcome.FAILED
    assert result.polls == 1
    assert clock.sleeps == []


def test_times_out_after_thirty_seconds_of_pending():
    clock = FakeClock()
    result = wait_for_payment(scripted(PaymentState.PENDING), sleep=clock.sleep, clock=clock)

    assert result.outcome is PollOutcome.TIMED_OUT
    assert result.last.state is PaymentState.PENDING
    assert clock.now == 30.0
    # one poll at t=0 and one after each 2 s sleep up to the deadline
    assert result.polls == 16
    assert all(s == 2.0 for s in clock.sleeps)


def test_last_sleep_is_clipped_to_the_deadline():
    clock = FakeClock()
    result = wait_for_payment(scripted(PaymentState.PENDING), interval=4, timeout=10, sleep=clock.sleep, clock=clock)
    assert result.outcome is PollOutcome.TIMED_OUT
    assert clock.sleeps == [4, 4, 2]
    assert clock.now == 10
