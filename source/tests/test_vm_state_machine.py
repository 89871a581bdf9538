from __future__ import annotations

import unittest

from helpers import bootstrap_tests

bootstrap_tests()

from statemachine.exceptions import TransitionNotAllowed  # noqa: E402

from pvefleet.core.vm_state_machine import (  # noqa: E402
    EVENT_CREATED,
    EVENT_DELETED,
    EVENT_MARK_FAILED,
    EVENT_REQUEST_CREATE,
    EVENT_REQUEST_DELETE,
    EVENT_REQUEST_UPDATE,
    EVENT_UPDATED,
    OPERATION_CREATE,
    STATE_ABSENT,
    STATE_ACTIVE,
    STATE_FAILED,
    STATE_PENDING_CREATE,
    STATE_PENDING_DELETE,
    STATE_PENDING_UPDATE,
    is_lifecycle_state,
    is_pending_state,
    operation_for_pending,
    transition_state,
)


class VmStateMachineTests(unittest.TestCase):
    def test_happy_path(self):
        state = transition_state(STATE_ABSENT, EVENT_REQUEST_CREATE)
        self.assertEqual(state, STATE_PENDING_CREATE)

        state = transition_state(state, EVENT_CREATED)
        self.assertEqual(state, STATE_ACTIVE)

        state = transition_state(state, EVENT_REQUEST_UPDATE)
        self.assertEqual(state, STATE_PENDING_UPDATE)

        state = transition_state(state, EVENT_UPDATED)
        self.assertEqual(state, STATE_ACTIVE)

        state = transition_state(state, EVENT_REQUEST_DELETE)
        self.assertEqual(state, STATE_PENDING_DELETE)

        state = transition_state(state, EVENT_DELETED)
        self.assertEqual(state, STATE_ABSENT)

    def test_failures_from_every_pending_state(self):
        for pending in (STATE_PENDING_CREATE, STATE_PENDING_UPDATE, STATE_PENDING_DELETE):
            self.assertEqual(transition_state(pending, EVENT_MARK_FAILED), STATE_FAILED)
        self.assertEqual(transition_state(STATE_FAILED, EVENT_MARK_FAILED), STATE_FAILED)

    def test_retry_transitions(self):
        self.assertEqual(transition_state(STATE_FAILED, EVENT_REQUEST_CREATE), STATE_PENDING_CREATE)
        self.assertEqual(transition_state(STATE_FAILED, EVENT_REQUEST_UPDATE), STATE_PENDING_UPDATE)
        self.assertEqual(transition_state(STATE_FAILED, EVENT_REQUEST_DELETE), STATE_PENDING_DELETE)
        self.assertEqual(transition_state(STATE_PENDING_CREATE, EVENT_REQUEST_CREATE), STATE_PENDING_CREATE)
        self.assertEqual(transition_state(STATE_PENDING_DELETE, EVENT_REQUEST_DELETE), STATE_PENDING_DELETE)

    def test_interrupted_create_can_be_deleted(self):
        self.assertEqual(transition_state(STATE_PENDING_CREATE, EVENT_REQUEST_DELETE), STATE_PENDING_DELETE)

    def test_disallowed_transitions(self):
        with self.assertRaises(TransitionNotAllowed):
            transition_state(STATE_ABSENT, EVENT_CREATED)
        with self.assertRaises(TransitionNotAllowed):
            transition_state(STATE_ACTIVE, EVENT_MARK_FAILED)
        with self.assertRaises(TransitionNotAllowed):
            transition_state(STATE_ABSENT, EVENT_REQUEST_DELETE)

    def test_unknown_state_is_rejected(self):
        with self.assertRaises(ValueError):
            transition_state("deleting_vm", EVENT_DELETED)

    def test_state_helpers(self):
        self.assertTrue(is_lifecycle_state(STATE_FAILED))
        self.assertFalse(is_lifecycle_state("completed"))
        self.assertTrue(is_pending_state(STATE_PENDING_UPDATE))
        self.assertFalse(is_pending_state(STATE_ACTIVE))
        self.assertEqual(operation_for_pending(STATE_PENDING_CREATE), OPERATION_CREATE)
        self.assertIsNone(operation_for_pending(STATE_ACTIVE))


if __name__ == "__main__":
    unittest.main()
