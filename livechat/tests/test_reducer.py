import random
import unittest

from livechat.codec import envelope
from livechat.reducer import (
    ChatState,
    NotifyError,
    NotifyMessage,
    ReducerOptions,
    ScheduleTypingClear,
    apply_reaction,
    clear_typing,
    reduce,
    set_connected,
)


def _msg(message_id: str, **extra) -> dict:
    raw = {"id": message_id, "userId": "u1", "username": "A", "content": message_id}
    raw.update(extra)
    return raw


def _run(frames, state: ChatState | None = None, options: ReducerOptions | None = None):
    state = state or ChatState()
    effects = []
    for frame in frames:
        result = reduce(state, frame, options)
        state = result.state
        effects.extend(result.effects)
    return state, effects


class HistoryAndMessageTests(unittest.TestCase):
    def test_history_then_live_messages_keep_arrival_order(self):
        frames = [envelope("HISTORY", {"messages": [_msg("h1"), _msg("h2")], "users": []})]
        frames += [envelope("MESSAGE", {"message": _msg(f"m{i}")}) for i in range(3)]

        state, effects = _run(frames)

        self.assertEqual([m.id for m in state.messages], ["h1", "h2", "m0", "m1", "m2"])
        self.assertEqual(len([e for e in effects if isinstance(e, NotifyMessage)]), 3)

    def test_history_replaces_rather_than_merges(self):
        state, _ = _run(
            [
                envelope("HISTORY", {"messages": [_msg("a")], "users": [{"userId": "u1"}]}),
                envelope("HISTORY", {"messages": [_msg("b")], "users": [{"userId": "u2"}]}),
            ]
        )
        self.assertEqual([m.id for m in state.messages], ["b"])
        self.assertEqual([u.user_id for u in state.users], ["u2"])

    def test_history_without_users_keeps_presence(self):
        state, _ = _run(
            [
                envelope("USER_JOINED", {"user": {"userId": "u1"}}),
                envelope("HISTORY", {"messages": []}),
            ]
        )
        self.assertEqual([u.user_id for u in state.users], ["u1"])

    def test_history_does_not_notify(self):
        _, effects = _run([envelope("HISTORY", {"messages": [_msg("a")]})])
        self.assertEqual(effects, [])

    def test_repeated_id_updates_in_place(self):
        state, effects = _run(
            [
                envelope("HISTORY", {"messages": [_msg("m1"), _msg("h2")]}),
                envelope("MESSAGE", {"message": _msg("m1", content="edited")}),
                envelope("MESSAGE_DELETE", {"messageId": "m1", "deletedBy": "mod"}),
            ]
        )

        self.assertEqual([m.id for m in state.messages], ["m1", "h2"])
        self.assertEqual(state.messages[0].content, "edited")
        self.assertTrue(state.messages[0].is_deleted)
        self.assertEqual(effects, [])

    def test_repeat_matched_through_alias(self):
        state, effects = _run(
            [
                envelope("MESSAGE", {"message": {"messageId": "m1", "_id": "mongo-1", "content": "a"}}),
                envelope("TIP", {"message": {"_id": "mongo-1", "content": "b"}, "tip": {"amount": 5}}),
            ]
        )

        self.assertEqual(len(state.messages), 1)
        self.assertEqual(state.messages[0].type, "tip")
        self.assertEqual(len(effects), 1)

    def test_repeat_does_not_revive_deleted_message(self):
        state, _ = _run(
            [
                envelope("MESSAGE", {"message": _msg("m1")}),
                envelope("MESSAGE_DELETE", {"messageId": "m1", "deletedBy": "mod"}),
                envelope("MESSAGE", {"message": _msg("m1")}),
            ]
        )

        self.assertEqual(len(state.messages), 1)
        self.assertTrue(state.messages[0].is_deleted)
        self.assertEqual(state.messages[0].deleted_by, "mod")

    def test_history_collapses_duplicate_ids(self):
        state, _ = _run(
            [envelope("HISTORY", {"messages": [_msg("a"), _msg("b"), _msg("a", content="later")]})]
        )

        self.assertEqual([m.id for m in state.messages], ["a", "b"])
        self.assertEqual(state.messages[0].content, "later")

    def test_message_with_tip_is_a_tip(self):
        state, _ = _run([envelope("MESSAGE", {"message": _msg("m1", type="text", tip={"amount": 10})})])
        self.assertEqual(state.messages[0].type, "tip")

    def test_message_tip_may_sit_beside_the_message(self):
        state, _ = _run([envelope("MESSAGE", {"message": _msg("m1"), "tip": {"amount": 5}})])
        self.assertEqual(state.messages[0].tip.amount, 5)

    def test_tip_frame_is_always_a_tip(self):
        state, effects = _run(
            [
                envelope("TIP", {"message": _msg("t1"), "tip": {"amount": 3, "recipientId": "u2"}}),
                envelope("TIP", {"amount": 4, "userId": "u1", "recipientId": "u2"}),
            ]
        )
        self.assertEqual([m.type for m in state.messages], ["tip", "tip"])
        self.assertEqual(state.messages[1].tip.amount, 4)
        self.assertTrue(state.messages[1].id.startswith("tip-"))
        self.assertEqual(len(effects), 2)

    def test_message_without_body_is_ignored(self):
        result = reduce(ChatState(), envelope("MESSAGE", {}))
        self.assertFalse(result.applied)
        self.assertEqual(result.state.messages, ())

    def test_input_state_is_not_modified(self):
        before = ChatState()
        reduce(before, envelope("MESSAGE", {"message": _msg("m1")}))
        self.assertEqual(before.messages, ())

    def test_media_resolver_is_applied(self):
        options = ReducerOptions(resolve_media=lambda url: url.upper())
        state, _ = _run([envelope("MESSAGE", {"message": _msg("m1", images=["a.png"])})], options=options)
        self.assertEqual(state.messages[0].media[0].url, "A.PNG")


class PresenceTests(unittest.TestCase):
    def test_random_join_leave_sequences_track_present_users(self):
        rng = random.Random(7)
        ids = [f"u{i}" for i in range(6)]
        for _ in range(50):
            state = ChatState()
            expected: dict[str, str] = {}
            for step in range(30):
                user_id = rng.choice(ids)
                if rng.random() < 0.6:
                    name = f"{user_id}-{step}"
                    state = reduce(state, envelope("USER_JOINED", {"user": {"userId": user_id, "username": name}})).state
                    expected[user_id] = name
                else:
                    state = reduce(state, envelope("USER_LEFT", {"userId": user_id})).state
                    expected.pop(user_id, None)
                user_ids = [u.user_id for u in state.users]
                self.assertEqual(len(user_ids), len(set(user_ids)))
                self.assertEqual({u.user_id: u.username for u in state.users}, expected)

    def test_rejoin_replaces_in_place(self):
        state, _ = _run(
            [
                envelope("USER_JOINED", {"user": {"userId": "u1", "username": "old"}}),
                envelope("USER_JOINED", {"user": {"userId": "u2"}}),
                envelope("USER_JOINED", {"user": {"userId": "u1", "username": "new"}}),
            ]
        )
        self.assertEqual([(u.user_id, u.username) for u in state.users], [("u1", "new"), ("u2", "")])

    def test_user_left_accepts_nested_user(self):
        state, _ = _run(
            [
                envelope("USER_JOINED", {"user": {"userId": "u1"}}),
                envelope("USER_LEFT", {"user": {"userId": "u1"}}),
            ]
        )
        self.assertEqual(state.users, ())

    def test_leaving_absent_user_is_a_no_op(self):
        state = ChatState()
        result = reduce(state, envelope("USER_LEFT", {"userId": "ghost"}))
        self.assertIs(result.state, state)


class TypingTests(unittest.TestCase):
    def test_typing_true_sets_entry_and_schedules_expiry(self):
        result = reduce(ChatState(), envelope("TYPING", {"userId": "u2", "isTyping": True}))
        self.assertEqual(dict(result.state.typing), {"u2": True})
        self.assertEqual(result.effects, (ScheduleTypingClear("u2", 3.0),))

    def test_typing_false_waits_for_grace_period(self):
        state = reduce(ChatState(), envelope("TYPING", {"userId": "u2", "isTyping": True})).state
        result = reduce(state, envelope("TYPING", {"userId": "u2", "isTyping": False}), ReducerOptions(typing_grace_s=0.25))
        self.assertEqual(dict(result.state.typing), {"u2": True})
        self.assertEqual(result.effects, (ScheduleTypingClear("u2", 0.25),))

    def test_clear_typing(self):
        state = reduce(ChatState(), envelope("TYPING", {"userId": "u2", "isTyping": True})).state
        self.assertEqual(dict(clear_typing(state, "u2").typing), {})
        empty = ChatState()
        self.assertIs(clear_typing(empty, "u2"), empty)

    def test_typing_without_user_is_ignored(self):
        self.assertFalse(reduce(ChatState(), envelope("TYPING", {"isTyping": True})).applied)


class ModerationTests(unittest.TestCase):
    def setUp(self):
        self.state = reduce(
            ChatState(),
            envelope("HISTORY", {"messages": [_msg("a"), {"messageId": "b", "_id": "b-mongo", "content": "b"}]}),
        ).state

    def test_reports_are_replaced_wholesale(self):
        first = reduce(
            self.state,
            envelope("MESSAGE_REPORTED", {"messageId": "a", "reports": [{"userId": "u2", "reason": "spam"}]}),
        ).state
        second = reduce(
            first,
            envelope("MESSAGE_REPORTED", {"messageId": "a", "reports": [{"userId": "u3", "reason": "rude"}]}),
        ).state
        self.assertEqual([(r.user_id, r.reason) for r in second.find_message("a").reports], [("u3", "rude")])

    def test_report_for_unknown_message_is_a_no_op(self):
        result = reduce(self.state, envelope("MESSAGE_REPORTED", {"messageId": "zzz", "reports": []}))
        self.assertIs(result.state, self.state)
        self.assertFalse(result.applied)

    def test_delete_keeps_position(self):
        state = reduce(
            self.state,
            envelope("MESSAGE_DELETE", {"messageId": "a", "deletedBy": "mod", "deletedAt": "2024-01-01T00:00:00Z"}),
        ).state
        self.assertEqual([m.id for m in state.messages], ["a", "b"])
        deleted = state.messages[0]
        self.assertTrue(deleted.is_deleted)
        self.assertEqual(deleted.deleted_by, "mod")
        self.assertIsNotNone(deleted.deleted_at)

    def test_lookup_by_alias(self):
        state = reduce(self.state, envelope("MESSAGE_DELETE", {"messageId": "b-mongo"})).state
        self.assertTrue(state.find_message("b").is_deleted)


class ReactionTests(unittest.TestCase):
    def test_random_add_remove_keeps_count_equal_to_users(self):
        rng = random.Random(11)
        base = reduce(ChatState(), envelope("HISTORY", {"messages": [_msg("m1")]})).state
        for _ in range(30):
            state = base
            expected: set[str] = set()
            for _ in range(40):
                user_id = rng.choice(["u1", "u2", "u3", "u4"])
                action = rng.choice(["add", "remove"])
                frame = envelope(
                    "REACTION", {"messageId": "m1", "emoji": "fire", "userId": user_id, "action": action}
                )
                state = reduce(state, frame).state
                if action == "add":
                    expected.add(user_id)
                else:
                    expected.discard(user_id)
                reactions = state.messages[0].reactions
                if not reactions:
                    self.assertEqual(expected, set())
                    continue
                reaction = reactions[0]
                self.assertEqual(reaction.count, len(reaction.users))
                self.assertEqual(len(reaction.users), len(set(reaction.users)))
                self.assertEqual(set(reaction.users), expected)

    def test_emptied_reaction_is_kept_at_zero(self):
        reactions = apply_reaction((), "x", "u1", "add")
        reactions = apply_reaction(reactions, "x", "u1", "remove")
        self.assertEqual(len(reactions), 1)
        self.assertEqual(reactions[0].count, 0)

    def test_remove_on_missing_emoji_does_not_create_it(self):
        self.assertEqual(apply_reaction((), "x", "u1", "remove"), ())

    def test_unknown_action_is_ignored(self):
        state = reduce(ChatState(), envelope("HISTORY", {"messages": [_msg("m1")]})).state
        result = reduce(state, envelope("REACTION", {"messageId": "m1", "emoji": "x", "userId": "u1", "action": "toggle"}))
        self.assertFalse(result.applied)


class ControlFrameTests(unittest.TestCase):
    def test_error_frame_notifies_without_mutation(self):
        state = ChatState()
        result = reduce(state, envelope("ERROR", {"error": "Rate limited"}))
        self.assertIs(result.state, state)
        self.assertEqual(result.effects, (NotifyError("Rate limited"),))

    def test_pong_and_unknown_types_change_nothing(self):
        state = ChatState()
        for frame in (envelope("PONG"), envelope("SOMETHING_NEW", {"x": 1})):
            with self.subTest(frame=frame.type):
                result = reduce(state, frame)
                self.assertIs(result.state, state)
                self.assertEqual(result.effects, ())

    def test_set_connected(self):
        state = set_connected(ChatState(), True)
        self.assertTrue(state.is_connected)
        self.assertIs(set_connected(state, True), state)


if __name__ == "__main__":
    unittest.main()
