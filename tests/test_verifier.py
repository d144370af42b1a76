import threading

import pytest

from shiftcare_shared import (
    ChallengeAlreadyUsed,
    ChallengeExpired,
    ChallengeLocked,
    ChallengeNotFound,
    ChallengeSweeper,
    CodeMismatch,
    MemoryChallengeStore,
    OTPVerifier,
    hash_code,
)

SECRET = "verifier-secret"
PHONE = "+15551112222"


class FakeClock:
    def __init__(self, now: float = 1_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.fixture()
def clock():
    return FakeClock()


@pytest.fixture()
def store(clock):
    return MemoryChallengeStore(clock=clock)


def _issue(store, code, phone=PHONE, ttl=600):
    return store.issue(phone, hash_code(SECRET, phone, code), ttl)


def test_correct_code_is_accepted_once(store):
    verifier = OTPVerifier(store, secret=SECRET)
    _issue(store, "123456")
    result = verifier.verify(PHONE, "123456")
    assert result.consumed is True
    with pytest.raises(ChallengeAlreadyUsed):
        verifier.verify(PHONE, "123456")


def test_expired_code_is_rejected_and_removed(store, clock):
    verifier = OTPVerifier(store, secret=SECRET)
    _issue(store, "123456", ttl=600)
    clock.now += 601
    with pytest.raises(ChallengeExpired):
        verifier.verify(PHONE, "123456")
    assert store.lookup(PHONE) is None
    with pytest.raises(ChallengeNotFound):
        verifier.verify(PHONE, "123456")


def test_code_is_still_valid_at_expiry_instant(store, clock):
    verifier = OTPVerifier(store, secret=SECRET)
    ch = _issue(store, "123456", ttl=600)
    clock.now = ch.expires_at
    assert verifier.verify(PHONE, "123456").consumed is True


def test_unknown_phone_is_not_found(store):
    with pytest.raises(ChallengeNotFound):
        OTPVerifier(store, secret=SECRET).verify(PHONE, "123456")


def test_reissue_invalidates_old_code(store):
    verifier = OTPVerifier(store, secret=SECRET)
    _issue(store, "111111")
    _issue(store, "222222")
    with pytest.raises(CodeMismatch):
        verifier.verify(PHONE, "111111")
    assert verifier.verify(PHONE, "222222").consumed is True


def test_mismatch_leaves_challenge_usable(store):
    verifier = OTPVerifier(store, secret=SECRET, max_attempts=5)
    _issue(store, "123456")
    with pytest.raises(CodeMismatch) as excinfo:
        verifier.verify(PHONE, "000000")
    assert excinfo.value.remaining_attempts == 4
    assert store.lookup(PHONE).consumed is False
    assert verifier.verify(PHONE, "123456").consumed is True


def test_mismatch_without_limit_reports_no_remaining(store):
    verifier = OTPVerifier(store, secret=SECRET, max_attempts=0)
    _issue(store, "123456")
    for _ in range(10):
        with pytest.raises(CodeMismatch) as excinfo:
            verifier.verify(PHONE, "000000")
        assert excinfo.value.remaining_attempts is None
    assert verifier.verify(PHONE, "123456").consumed is True


def test_too_many_mismatches_lock_the_challenge(store):
    verifier = OTPVerifier(store, secret=SECRET, max_attempts=3)
    _issue(store, "123456")
    for _ in range(3):
        with pytest.raises(CodeMismatch):
            verifier.verify(PHONE, "000000")
    with pytest.raises(ChallengeLocked):
        verifier.verify(PHONE, "123456")
    # A fresh code clears the lock
    _issue(store, "654321")
    assert verifier.verify(PHONE, "654321").consumed is True


def test_code_for_another_phone_does_not_match(store):
    verifier = OTPVerifier(store, secret=SECRET)
    _issue(store, "123456", phone="+15550001111")
    _issue(store, "999999", phone=PHONE)
    with pytest.raises(CodeMismatch):
        verifier.verify(PHONE, "123456")


def test_concurrent_verifies_have_exactly_one_winner(store):
    verifier = OTPVerifier(store, secret=SECRET)
    _issue(store, "123456")
    workers = 16
    barrier = threading.Barrier(workers)
    successes = []
    failures = []
    lock = threading.Lock()

    def _attempt():
        barrier.wait()
        try:
            verifier.verify(PHONE, "123456")
        except ChallengeAlreadyUsed as exc:
            with lock:
                failures.append(exc)
        else:
            with lock:
                successes.append(True)

    threads = [threading.Thread(target=_attempt) for _ in range(workers)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert len(successes) == 1
    assert len(failures) == workers - 1


def test_lost_race_against_reissue_is_not_found(store, monkeypatch):
    verifier = OTPVerifier(store, secret=SECRET)
    _issue(store, "123456")
    original_consume = store.consume

    def _consume_after_reissue(phone, nonce=None):
        _issue(store, "777777")
        return original_consume(phone, nonce)

    monkeypatch.setattr(store, "consume", _consume_after_reissue)
    with pytest.raises(ChallengeNotFound):
        verifier.verify(PHONE, "123456")
    assert store.lookup(PHONE).consumed is False


def test_sweeper_removes_expired_from_every_store(clock):
    first = MemoryChallengeStore(clock=clock)
    second = MemoryChallengeStore(clock=clock)
    first.issue("+15550000001", "h", 10)
    second.issue("+15550000002", "h", 10)
    second.issue("+15550000003", "h", 600)
    counted = []
    sweeper = ChallengeSweeper([first, second], interval_secs=60, on_sweep=counted.append)
    clock.now += 11
    assert sweeper.run_once() == 2
    assert counted == [2]
    assert len(first) == 0
    assert len(second) == 1


def test_sweeper_thread_starts_and_stops():
    sweeper = ChallengeSweeper([MemoryChallengeStore()], interval_secs=0.01)
    sweeper.start()
    assert sweeper.running
    sweeper.stop()
    assert not sweeper.running
