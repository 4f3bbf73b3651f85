from charm_cards.errors import TransientNetworkError
from charm_cards.mempool import MempoolPoller


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


class StubLookup:
    def __init__(self, answers) -> None:
        self.answers = list(answers)
        self.calls = 0

    def has_transaction(self, _txid):
        self.calls += 1
        answer = self.answers.pop(0) if len(self.answers) > 1 else self.answers[0]
        if isinstance(answer, Exception):
            raise answer
        return answer


def _poller(answers):
    clock = FakeClock()
    lookup = StubLookup(answers)
    return MempoolPoller(lookup, clock=clock, sleep=clock.sleep), lookup, clock


def test_transaction_seen_after_a_few_polls() -> None:
    poller, lookup, _ = _poller([False, TransientNetworkError("blip"), True])

    result = poller.await_acceptance("aa" * 32, timeout=30, poll_interval=1)

    assert result.accepted
    assert result.attempts == 3
    assert result.elapsed_ms == 2000
    assert lookup.calls == 3


def test_gives_up_without_overshooting_timeout() -> None:
    poller, _, clock = _poller([False])

    result = poller.await_acceptance("aa" * 32, timeout=5, poll_interval=2)

    assert not result.accepted
    assert clock.sleeps == [2, 2, 1]
    assert result.attempts == 4
    assert clock.now == 5
    assert result.elapsed_ms == 5000


def test_final_poll_happens_at_the_deadline() -> None:
    poller, lookup, _ = _poller([False, False, False, True])

    result = poller.await_acceptance("aa" * 32, timeout=5, poll_interval=2)

    assert result.accepted
    assert result.attempts == 4
    assert result.elapsed_ms == 5000
    assert lookup.calls == 4
