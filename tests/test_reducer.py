import unittest
from datetime import date

from captain.derived_events import derive_events
from captain.models import (
    ADD_CHAT_MESSAGE,
    ADD_EVENT,
    ADD_OPPORTUNITY,
    DELETE_EVENT,
    DELETE_OPPORTUNITY,
    LOAD_DATA,
    SET_EVENTS,
    SET_OPPORTUNITIES,
    UPDATE_EVENT,
    UPDATE_MASTER_RESUME,
    UPDATE_OPPORTUNITY,
    UPDATE_USER_PROFILE,
    Action,
    AppState,
)
from captain.reducer import reduce


def _opportunity(opportunity_id=1, status="Applied", company="Acme", reference_date="2024-01-01") -> dict:
    return {
        "id": opportunity_id,
        "company": company,
        "position": "Engineer",
        "status": status,
        "referenceDate": reference_date,
    }


def _apply(state: AppState, *actions: dict) -> AppState:
    for action in actions:
        state = reduce(state, action)
    return state


def _add(payload: dict) -> dict:
    return {"type": ADD_OPPORTUNITY, "payload": payload}


def _chat(opportunity_id, message="hi", sender="user") -> dict:
    return {
        "type": ADD_CHAT_MESSAGE,
        "payload": {"opportunityId": opportunity_id, "message": message, "sender": sender},
    }


def _consistent(state: AppState) -> bool:
    ids = {item.id for item in state.opportunities}
    events_ok = all(event.opportunity_id is None or event.opportunity_id in ids for event in state.events)
    threads_ok = all(key in ids for key in state.chat_messages)
    return events_ok and threads_ok


class AddOpportunityTests(unittest.TestCase):
    def test_add_appends_opportunity_and_derived_events(self) -> None:
        state = reduce(AppState(), _add(_opportunity()))
        self.assertEqual([item.id for item in state.opportunities], ["1"])
        self.assertEqual(len(state.events), 1)
        self.assertEqual(state.events[0].title, "Follow up with Acme")
        self.assertEqual(state.events[0].date, date(2024, 1, 8))
        self.assertEqual(state.events[0].opportunity_id, "1")

    def test_colliding_id_gets_fresh_id(self) -> None:
        state = _apply(AppState(), _add(_opportunity(1)), _add(_opportunity("1", company="Other")))
        self.assertEqual(len(state.opportunities), 2)
        first, second = state.opportunities
        self.assertEqual(first.id, "1")
        self.assertNotEqual(second.id, "1")
        self.assertEqual(second.company, "Other")
        self.assertEqual(len(state.events_for(second.id)), 1)
        self.assertTrue(_consistent(state))

    def test_missing_id_gets_fresh_id(self) -> None:
        payload = _opportunity()
        payload.pop("id")
        state = reduce(AppState(), _add(payload))
        self.assertTrue(state.opportunities[0].id)

    def test_status_without_template_adds_no_events(self) -> None:
        state = reduce(AppState(), _add(_opportunity(status="Bookmarked")))
        self.assertEqual(state.events, [])

    def test_input_state_is_not_mutated(self) -> None:
        initial = reduce(AppState(), _add(_opportunity(1)))
        snapshot = initial.to_dict()
        reduce(initial, _add(_opportunity(2)))
        reduce(initial, {"type": DELETE_OPPORTUNITY, "payload": 1})
        self.assertEqual(initial.to_dict(), snapshot)


class UpdateOpportunityTests(unittest.TestCase):
    def setUp(self) -> None:
        self.state = reduce(AppState(), _add(_opportunity(1)))

    def test_status_change_replaces_derived_events(self) -> None:
        state = reduce(
            self.state,
            {"type": UPDATE_OPPORTUNITY, "payload": {"id": "1", "updates": {"status": "First Interview"}}},
        )
        events = state.events_for("1")
        self.assertEqual(len(events), 1)
        self.assertEqual(events[0].type, "interview")
        self.assertEqual(events[0].date, date(2024, 1, 6))
        self.assertEqual(events[0].title, "First Interview with Acme")

    def test_every_transition_leaves_exactly_the_new_derived_set(self) -> None:
        statuses = [
            "Applied",
            "Technical Assessment",
            "First Interview",
            "Second Interview",
            "Offer Received",
            "Rejected",
            "Following Up",
            "Final Interview",
        ]
        state = self.state
        for status in statuses:
            state = reduce(state, {"type": UPDATE_OPPORTUNITY, "payload": {"id": 1, "updates": {"status": status}}})
            expected = derive_events(state.find_opportunity(1))
            self.assertEqual(state.events_for(1, source="derived"), expected, status)

    def test_non_status_patch_keeps_events(self) -> None:
        state = reduce(
            self.state,
            {"type": UPDATE_OPPORTUNITY, "payload": {"id": 1, "updates": {"notes": "Call Friday"}}},
        )
        self.assertEqual(state.find_opportunity(1).notes, "Call Friday")
        self.assertEqual(state.events, self.state.events)

    def test_user_event_survives_status_change(self) -> None:
        state = reduce(
            self.state,
            {
                "type": ADD_EVENT,
                "payload": {"id": "u1", "title": "Coffee chat", "date": "2024-01-03", "opportunityId": 1},
            },
        )
        state = reduce(state, {"type": UPDATE_OPPORTUNITY, "payload": {"id": 1, "updates": {"status": "Rejected"}}})
        self.assertEqual([event.id for event in state.events_for(1)], ["u1"])

    def test_unknown_opportunity_is_noop(self) -> None:
        state = reduce(
            self.state,
            {"type": UPDATE_OPPORTUNITY, "payload": {"id": 99, "updates": {"status": "Rejected"}}},
        )
        self.assertIs(state, self.state)

    def test_unknown_fields_in_patch_are_ignored(self) -> None:
        state = reduce(
            self.state,
            {"type": UPDATE_OPPORTUNITY, "payload": {"id": 1, "updates": {"bogus": True, "salary": "100k"}}},
        )
        self.assertEqual(state.find_opportunity(1).salary, "100k")
        self.assertFalse(hasattr(state.find_opportunity(1), "bogus"))

    def test_rekey_moves_events_and_thread(self) -> None:
        state = _apply(
            self.state,
            {"type": ADD_EVENT, "payload": {"id": "u1", "title": "Prep", "date": "2024-01-02", "opportunity_id": 1}},
            _chat(1, "hello"),
            {"type": UPDATE_OPPORTUNITY, "payload": {"id": 1, "updates": {"id": "remote-abc"}}},
        )
        self.assertIsNone(state.find_opportunity(1))
        self.assertIsNotNone(state.find_opportunity("remote-abc"))
        self.assertEqual(sorted(e.id for e in state.events_for("remote-abc")), ["remote-abc:followup", "u1"])
        self.assertEqual([m.message for m in state.thread("remote-abc")], ["hello"])
        self.assertNotIn("1", state.chat_messages)
        self.assertTrue(_consistent(state))

    def test_rekey_onto_existing_id_is_noop(self) -> None:
        state = reduce(self.state, _add(_opportunity(2)))
        updated = reduce(state, {"type": UPDATE_OPPORTUNITY, "payload": {"id": 1, "updates": {"id": 2}}})
        self.assertIs(updated, state)


class DeleteOpportunityTests(unittest.TestCase):
    def test_delete_cascades_to_events_and_thread(self) -> None:
        state = _apply(
            AppState(),
            _add(_opportunity(1)),
            _add(_opportunity(2, company="Beta")),
            {"type": ADD_EVENT, "payload": {"id": "u1", "title": "Prep", "date": "2024-01-02", "opportunityId": "1"}},
            _chat(1),
            _chat(2),
            {"type": DELETE_OPPORTUNITY, "payload": "1"},
        )
        self.assertIsNone(state.find_opportunity(1))
        self.assertEqual(state.events_for(1), [])
        self.assertNotIn("1", state.chat_messages)
        self.assertEqual(len(state.events_for(2)), 1)
        self.assertIn("2", state.chat_messages)
        self.assertTrue(_consistent(state))

    def test_delete_accepts_object_payload(self) -> None:
        state = _apply(AppState(), _add(_opportunity(1)), {"type": DELETE_OPPORTUNITY, "payload": {"id": 1}})
        self.assertEqual(state.opportunities, [])

    def test_delete_unknown_is_noop(self) -> None:
        state = reduce(AppState(), _add(_opportunity(1)))
        after = reduce(state, {"type": DELETE_OPPORTUNITY, "payload": 42})
        self.assertIs(after, state)
        self.assertEqual(len(after.opportunities), 1)
        self.assertEqual(len(after.events), 1)


class EventActionTests(unittest.TestCase):
    def setUp(self) -> None:
        self.state = reduce(AppState(), _add(_opportunity(1, status="Bookmarked")))

    def test_add_update_delete_user_event(self) -> None:
        state = reduce(
            self.state,
            {"type": ADD_EVENT, "payload": {"id": 7, "title": "Networking", "date": "2024-02-01", "type": "general"}},
        )
        self.assertEqual(state.find_event("7").title, "Networking")
        self.assertIsNone(state.find_event(7).opportunity_id)

        state = reduce(state, {"type": UPDATE_EVENT, "payload": {"id": "7", "updates": {"title": "Meetup"}}})
        self.assertEqual(state.find_event(7).title, "Meetup")
        self.assertEqual(state.find_event(7).date, date(2024, 2, 1))

        state = reduce(state, {"type": DELETE_EVENT, "payload": 7})
        self.assertEqual(state.events, [])

    def test_add_event_with_unknown_opportunity_is_noop(self) -> None:
        state = reduce(
            self.state,
            {"type": ADD_EVENT, "payload": {"id": 8, "title": "X", "date": "2024-02-01", "opportunityId": 99}},
        )
        self.assertIs(state, self.state)

    def test_add_event_with_colliding_id_gets_fresh_id(self) -> None:
        state = _apply(
            self.state,
            {"type": ADD_EVENT, "payload": {"id": 8, "title": "A", "date": "2024-02-01"}},
            {"type": ADD_EVENT, "payload": {"id": "8", "title": "B", "date": "2024-02-02"}},
        )
        self.assertEqual(len(state.events), 2)
        self.assertNotEqual(state.events[0].id, state.events[1].id)

    def test_derived_event_never_reuses_user_event_id(self) -> None:
        state = _apply(
            self.state,
            {"type": ADD_EVENT, "payload": {"id": "1:followup", "title": "Mine", "date": "2024-02-01", "opportunityId": 1}},
            {"type": UPDATE_OPPORTUNITY, "payload": {"id": 1, "updates": {"status": "Applied"}}},
        )
        ids = [event.id for event in state.events]
        self.assertEqual(len(ids), len(set(ids)))
        self.assertEqual(state.find_event("1:followup").title, "Mine")
        derived = state.events_for(1, source="derived")
        self.assertEqual([event.type for event in derived], ["followup"])

        state = reduce(state, {"type": DELETE_EVENT, "payload": "1:followup"})
        self.assertEqual([event.id for event in state.events], [derived[0].id])

    def test_update_event_cannot_point_at_unknown_opportunity(self) -> None:
        state = reduce(self.state, {"type": ADD_EVENT, "payload": {"id": 8, "title": "A", "date": "2024-02-01"}})
        after = reduce(state, {"type": UPDATE_EVENT, "payload": {"id": 8, "updates": {"opportunityId": 99}}})
        self.assertIs(after, state)

    def test_missing_event_targets_are_noops(self) -> None:
        self.assertIs(reduce(self.state, {"type": DELETE_EVENT, "payload": "nope"}), self.state)
        self.assertIs(
            reduce(self.state, {"type": UPDATE_EVENT, "payload": {"id": "nope", "updates": {"title": "x"}}}),
            self.state,
        )

    def test_unknown_event_type_becomes_general(self) -> None:
        state = reduce(self.state, {"type": ADD_EVENT, "payload": {"id": 9, "title": "A", "type": "party"}})
        self.assertEqual(state.find_event(9).type, "general")

    def test_set_events_replaces_and_prunes_orphans(self) -> None:
        state = reduce(
            self.state,
            {
                "type": SET_EVENTS,
                "payload": [
                    {"id": "a", "title": "Kept", "date": "2024-03-01", "opportunityId": 1},
                    {"id": "b", "title": "Orphan", "date": "2024-03-01", "opportunityId": 77},
                    {"id": "c", "title": "Free", "date": "2024-03-02"},
                ],
            },
        )
        self.assertEqual([event.id for event in state.events], ["a", "c"])


class ChatTests(unittest.TestCase):
    def setUp(self) -> None:
        self.state = reduce(AppState(), _add(_opportunity(1)))

    def test_append_creates_thread_and_stamps_message(self) -> None:
        state = _apply(self.state, _chat(1, "first"), _chat("1", "reply", sender="ai"))
        thread = state.thread(1)
        self.assertEqual([m.message for m in thread], ["first", "reply"])
        self.assertEqual([m.sender for m in thread], ["user", "assistant"])
        self.assertTrue(all(m.id and m.timestamp for m in thread))
        self.assertNotEqual(thread[0].id, thread[1].id)
        self.assertEqual(list(state.chat_messages), ["1"])

    def test_unknown_opportunity_is_noop(self) -> None:
        self.assertIs(reduce(self.state, _chat(5)), self.state)

    def test_unknown_sender_is_malformed(self) -> None:
        self.assertIs(reduce(self.state, _chat(1, sender="robot")), self.state)


class BulkAndProfileTests(unittest.TestCase):
    def test_set_opportunities_prunes_dependents(self) -> None:
        state = _apply(AppState(), _add(_opportunity(1)), _add(_opportunity(2)), _chat(1))
        state = reduce(state, {"type": SET_OPPORTUNITIES, "payload": [_opportunity(2, status="Rejected")]})
        self.assertEqual([item.id for item in state.opportunities], ["2"])
        self.assertEqual(state.events_for(1), [])
        self.assertEqual(state.chat_messages, {})
        # Replacement does not derive.
        self.assertEqual(len(state.events_for(2)), 1)
        self.assertTrue(_consistent(state))

    def test_load_data_hydrates_and_keeps_missing_parts(self) -> None:
        state = reduce(AppState(), {"type": UPDATE_MASTER_RESUME, "payload": "My resume"})
        state = reduce(
            state,
            {
                "type": LOAD_DATA,
                "payload": {
                    "opportunities": [_opportunity("abc")],
                    "events": [{"id": "e1", "title": "Call", "date": "2024-01-10", "opportunityId": "abc"}],
                    "chatMessages": {"abc": [{"id": "m1", "message": "hi", "sender": "user", "timestamp": "t"}]},
                },
            },
        )
        self.assertEqual(state.master_resume, "My resume")
        self.assertEqual(state.find_opportunity("abc").company, "Acme")
        self.assertEqual([event.id for event in state.events], ["e1"])
        self.assertEqual(state.thread("abc")[0].message, "hi")

    def test_load_data_survives_bad_chat_sender(self) -> None:
        state = reduce(
            AppState(),
            {
                "type": LOAD_DATA,
                "payload": {
                    "opportunities": [_opportunity("abc")],
                    "chatMessages": {"abc": [{"id": "m1", "message": "?", "sender": "system", "timestamp": "t"}]},
                },
            },
        )
        self.assertEqual([item.id for item in state.opportunities], ["abc"])
        self.assertEqual(state.thread("abc"), [])

    def test_update_user_profile_merges(self) -> None:
        state = _apply(
            AppState(),
            {"type": UPDATE_USER_PROFILE, "payload": {"name": "Jane", "preferences": {"darkMode": True}}},
            {"type": UPDATE_USER_PROFILE, "payload": {"email": "jane@example.com"}},
        )
        self.assertEqual(state.user_profile.name, "Jane")
        self.assertEqual(state.user_profile.email, "jane@example.com")
        self.assertTrue(state.user_profile.preferences["dark_mode"])


class TotalityTests(unittest.TestCase):
    def setUp(self) -> None:
        self.state = _apply(AppState(), _add(_opportunity(1)), _chat(1))

    def test_unknown_action_returns_same_state(self) -> None:
        self.assertIs(reduce(self.state, {"type": "SOMETHING_ELSE", "payload": 1}), self.state)
        self.assertIs(reduce(self.state, Action("")), self.state)
        self.assertIs(reduce(self.state, "not an action"), self.state)

    def test_malformed_payloads_are_noops(self) -> None:
        malformed = [
            {"type": ADD_OPPORTUNITY, "payload": "oops"},
            {"type": UPDATE_OPPORTUNITY, "payload": {"updates": {"status": "Applied"}}},
            {"type": UPDATE_OPPORTUNITY, "payload": {"id": 1, "updates": "Applied"}},
            {"type": DELETE_OPPORTUNITY, "payload": None},
            {"type": SET_OPPORTUNITIES, "payload": {"id": 1}},
            {"type": SET_EVENTS, "payload": None},
            {"type": ADD_EVENT, "payload": 3},
            {"type": ADD_CHAT_MESSAGE, "payload": {"opportunityId": 1}},
            {"type": UPDATE_USER_PROFILE, "payload": "Jane"},
            {"type": UPDATE_MASTER_RESUME, "payload": 5},
            {"type": LOAD_DATA, "payload": []},
        ]
        for action in malformed:
            self.assertIs(reduce(self.state, action), self.state, action["type"])
        self.assertTrue(_consistent(self.state))


class ScenarioTests(unittest.TestCase):
    def test_applied_to_interview_to_delete(self) -> None:
        state = reduce(AppState(), _add(_opportunity(1, status="Applied", reference_date="2024-01-01")))
        follow_up = state.events_for(1)
        self.assertEqual(len(follow_up), 1)
        self.assertEqual(follow_up[0].type, "followup")
        self.assertEqual(follow_up[0].date, date(2024, 1, 8))
        self.assertEqual(follow_up[0].title, "Follow up with Acme")

        state = reduce(
            state, {"type": UPDATE_OPPORTUNITY, "payload": {"id": 1, "updates": {"status": "First Interview"}}}
        )
        events = state.events_for(1)
        self.assertEqual([(e.type, e.date) for e in events], [("interview", date(2024, 1, 6))])

        state = _apply(state, _chat(1, "How do I prepare?"), {"type": DELETE_OPPORTUNITY, "payload": 1})
        self.assertEqual(state.opportunities, [])
        self.assertEqual(state.events, [])
        self.assertNotIn("1", state.chat_messages)

    def test_index_tracks_back_references(self) -> None:
        state = _apply(
            AppState(),
            _add(_opportunity(1)),
            {"type": ADD_EVENT, "payload": {"id": "u1", "title": "Prep", "date": "2024-01-02", "opportunityId": 1}},
            {"type": ADD_EVENT, "payload": {"id": "free", "title": "Gym", "date": "2024-01-02"}},
        )
        self.assertEqual(state.event_ids_by_opportunity(), {"1": ["1:followup", "u1"]})


if __name__ == "__main__":
    unittest.main()
