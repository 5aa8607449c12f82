"""
Tests for compensation ordering and failure handling.
"""

from coin_gate.core.saga import Saga


class TestSaga:

    def test_compensations_run_in_reverse_order(self):
        saga = Saga("generate")
        undone = []
        saga.add_compensation("first", undone.append, 1)
        saga.add_compensation("second", undone.append, 2)
        saga.add_compensation("third", undone.append, 3)

        failed = saga.compensate()

        assert undone == [3, 2, 1]
        assert failed == []
        assert len(saga) == 0

    def test_failing_compensation_does_not_stop_the_rest(self):
        saga = Saga("generate")
        undone = []

        def explode():
            raise OSError("disk gone")

        saga.add_compensation("delete payload a", undone.append, "a")
        saga.add_compensation("delete payload b", explode)
        saga.add_compensation("delete payload c", undone.append, "c")

        failed = saga.compensate()

        assert undone == ["c", "a"]
        assert [step.description for step in failed] == ["delete payload b"]

    def test_complete_discards_compensations(self):
        saga = Saga("generate")
        undone = []
        saga.add_compensation("undo", undone.append, 1)

        saga.complete()

        assert saga.compensate() == []
        assert undone == []

    def test_steps_is_a_copy(self):
        saga = Saga("generate")
        saga.add_compensation("undo", print)
        saga.steps.clear()
        assert len(saga) == 1
