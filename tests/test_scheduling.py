import pytest

from canvas_vision.scheduling import SettleSequence, Step


def _recorder():
    calls = []

    def make(name, result=None):
        def action(now):
            calls.append((name, now))
            return result
        return action

    return calls, make


class TestSettleSequence:
    def test_steps_run_after_their_delays(self):
        calls, make = _recorder()
        seq = SettleSequence("test", [
            Step("first", 0.2, make("first")),
            Step("second", 0.5, make("second")),
        ]).start(0.0)

        assert seq.poll(0.1)
        assert calls == []
        assert seq.next_step == "first"

        seq.poll(0.2)
        assert calls == [("first", 0.2)]

        seq.poll(0.6)
        assert len(calls) == 1

        assert not seq.poll(0.7)
        assert calls[-1] == ("second", 0.7)
        assert not seq.pending

    def test_next_delay_counts_from_the_previous_step(self):
        calls, make = _recorder()
        seq = SettleSequence("test", [
            Step("first", 0.2, make("first")),
            Step("second", 0.5, make("second")),
        ]).start(0.0)

        seq.poll(1.0)
        assert [c[0] for c in calls] == ["first"]
        seq.poll(1.5)
        assert [c[0] for c in calls] == ["first", "second"]

    def test_zero_delay_steps_run_in_one_poll(self):
        calls, make = _recorder()
        seq = SettleSequence("test", [
            Step("a", 0.0, make("a")),
            Step("b", 0.0, make("b")),
        ]).start(5.0)
        seq.poll(5.0)
        assert [c[0] for c in calls] == ["a", "b"]

    def test_cancel_drops_remaining_steps(self):
        calls, make = _recorder()
        seq = SettleSequence("test", [Step("only", 0.2, make("only"))]).start(0.0)
        seq.cancel()
        assert not seq.poll(10.0)
        assert calls == []
        assert seq.cancelled

    def test_false_result_aborts(self):
        calls, make = _recorder()
        seq = SettleSequence("test", [
            Step("fails", 0.0, make("fails", result=False)),
            Step("never", 0.0, make("never")),
        ]).start(0.0)
        seq.poll(0.0)
        assert [c[0] for c in calls] == ["fails"]
        assert seq.aborted
        assert not seq.pending

    def test_restart_after_completion(self):
        calls, make = _recorder()
        seq = SettleSequence("test", [Step("only", 0.1, make("only"))])
        assert not seq.started
        seq.start(0.0).poll(0.1)
        seq.start(1.0).poll(1.1)
        assert len(calls) == 2

    def test_needs_steps(self):
        with pytest.raises(ValueError):
            SettleSequence("empty", [])
