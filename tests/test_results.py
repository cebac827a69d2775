"""Tests for request completions."""

import threading

from onboarding_tool.results import (
    UNSPECIFIED_FAILURE,
    Completion,
    PendingRequest,
    status_handler,
)


class TestCompletion:
    """Tests for single-fire completions."""

    def test_succeed_once(self):
        """Should keep the first outcome and drop later ones."""
        completion = Completion("retrieve")

        assert completion.succeed("first") is True
        assert completion.succeed("second") is False
        assert completion.fail(-3) is False

        result = completion.result(timeout=1)
        assert result.success
        assert result.payload == "first"

    def test_fail_carries_code(self):
        """Should report the SDK's failure code."""
        completion = Completion("retrieve")

        completion.fail(-7)

        result = completion.result(timeout=1)
        assert result.failed
        assert result.error_code == -7

    def test_transition_runs_before_handlers(self):
        """Should apply the state transition before anyone sees the outcome."""
        events = []
        completion = Completion("retrieve", transition=lambda r: events.append("transition"))
        completion.add_handler(lambda r: events.append("handler"))

        completion.succeed()

        assert events == ["transition", "handler"]

    def test_transition_error_does_not_block_outcome(self):
        """Should still resolve when the transition raises."""
        def broken(result):
            raise RuntimeError("boom")

        completion = Completion("retrieve", transition=broken)
        completion.succeed(1)

        assert completion.done
        assert completion.result(timeout=1).payload == 1

    def test_handler_error_isolated(self):
        """Should run every handler even if one raises."""
        seen = []
        completion = Completion("retrieve")
        completion.add_handler(lambda r: 1 / 0)
        completion.add_handler(lambda r: seen.append(r.success))

        completion.succeed()

        assert seen == [True]

    def test_late_handler_runs_immediately(self):
        """Should call handlers attached after resolution right away."""
        seen = []
        completion = Completion("retrieve")
        completion.fail()

        completion.add_handler(lambda r: seen.append(r.error_code))

        assert seen == [UNSPECIFIED_FAILURE]

    def test_racing_resolutions(self):
        """Should accept exactly one of many concurrent resolutions."""
        completion = Completion("retrieve")
        wins = []

        def resolve(i):
            if completion.succeed(i):
                wins.append(i)

        threads = [threading.Thread(target=resolve, args=(i,)) for i in range(16)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(wins) == 1
        assert completion.result(timeout=1).payload == wins[0]


class TestStatusHandler:
    """Tests for the SDK callback adapter."""

    def test_negative_status_fails(self):
        """Should fail the completion with the SDK status."""
        completion = Completion("retrieve")

        status_handler(completion)(-2, None)

        assert completion.result(timeout=1).error_code == -2

    def test_transform_applied(self):
        """Should pass the payload through the transform."""
        completion = Completion("retrieve")

        status_handler(completion, list)(0, iter([1, 2]))

        assert completion.result(timeout=1).payload == [1, 2]

    def test_malformed_payload_fails(self):
        """Should fail when the payload cannot be transformed."""
        completion = Completion("retrieve")

        status_handler(completion, lambda p: p["missing"])(0, {})

        result = completion.result(timeout=1)
        assert result.failed
        assert result.error_code == UNSPECIFIED_FAILURE


class TestPendingRequest:
    """Tests for the request handle wrapper."""

    def test_delegates_to_completion(self):
        """Should expose the completion's operation and outcome."""
        completion = Completion("ACE provisioning")
        request = PendingRequest(handle=4, completion=completion)
        seen = []
        request.add_handler(seen.append)

        completion.succeed(9)

        assert request.operation == "ACE provisioning"
        assert request.result(timeout=1).payload == 9
        assert seen[0].payload == 9
