"""
Unit tests for ResponseCoordinator and the responder selection cascade.
"""

from datetime import timedelta

import crud
import pytest
from domain.contexts import Avatar, ChannelMessageView, CoordinationContext, IncomingMessage, RankedAvatar, Selection
from domain.enums import SelectionTier, TriggerType
from orchestration import SelectionStrategy
from orchestration.selection import PresenceRankedStrategy

from utils.timeutils import utcnow


def human_message(message_id="m1", content="hello", author_id="u1", **kwargs):
    return IncomingMessage(id=message_id, channel_id="c1", author_id=author_id, content=content, **kwargs)


class StaticStrategy(SelectionStrategy):
    tier = SelectionTier.PRESENCE_RANKED

    def __init__(self, avatars):
        self.avatars = avatars

    async def select(self, ctx):
        return self._pick(list(self.avatars))


class TestClassifyTrigger:
    """Tests for trigger classification."""

    @pytest.mark.unit
    def test_no_message_is_ambient(self, turn_engine):
        assert turn_engine.coordinator.classify_trigger(None).type == TriggerType.AMBIENT

    @pytest.mark.unit
    def test_human_messages(self, turn_engine):
        classify = turn_engine.coordinator.classify_trigger

        assert classify(human_message()).type == TriggerType.HUMAN_MESSAGE
        assert classify(human_message(mentioned_user_ids=["x"])).type == TriggerType.MENTION

    @pytest.mark.unit
    def test_bot_message(self, turn_engine):
        message = human_message(author_id="a", author_is_bot=True)

        assert turn_engine.coordinator.classify_trigger(message).type == TriggerType.BOT_MESSAGE

    @pytest.mark.unit
    def test_context_override(self, turn_engine):
        context = CoordinationContext(trigger_type=TriggerType.AMBIENT)

        assert turn_engine.coordinator.classify_trigger(human_message(), context).type == TriggerType.AMBIENT


class TestDirectReply:
    """Tests for tier 0."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_reply_beats_mention(self, turn_engine, collaborators, db):
        await crud.record_channel_message(db, "c1", "prev", author_id="a", is_bot=True, avatar_id="a")
        message = human_message(content="Bravo, do you agree?", reply_to_message_id="prev")

        responses = await turn_engine.coordinate_response("c1", message)

        assert [r.avatar_id for r in responses] == ["a"]
        assert responses[0].tier == SelectionTier.DIRECT_REPLY

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_reply_bypasses_cooldowns(self, turn_engine, db):
        await crud.record_channel_message(db, "c1", "prev", author_id="a", is_bot=True, avatar_id="a")
        await crud.ensure_presence(db, "c1", "a")
        await crud.record_turn(db, "c1", "a")
        turn_engine.gate.channel_cooldown = 5
        turn_engine.gate.bot_reply_cooldown = 10
        turn_engine.gate.record_response("c1", "a", "prev")

        responses = await turn_engine.coordinate_response("c1", human_message(reply_to_message_id="prev"))

        assert [r.avatar_id for r in responses] == ["a"]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_reply_relocates_absent_avatar(self, turn_engine, collaborators, bravo, db):
        collaborators.identity.get_avatars_in_channel.return_value = [bravo]
        await crud.record_channel_message(db, "elsewhere", "prev", author_id="a", is_bot=True, avatar_id="a")

        responses = await turn_engine.coordinate_response("c1", human_message(reply_to_message_id="prev"))

        assert [r.avatar_id for r in responses] == ["a"]
        relocated, channel_id = collaborators.transport.relocate_avatar.await_args.args
        assert relocated.id == "a"
        assert channel_id == "c1"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_reply_to_unknown_message_falls_through(self, turn_engine):
        message = human_message(content="Charlie?", reply_to_message_id="not-ours")

        responses = await turn_engine.coordinate_response("c1", message)

        assert [r.avatar_id for r in responses] == ["c"]
        assert responses[0].tier == SelectionTier.DIRECT_MENTION


class TestThreadContinuation:
    """Tests for tier 1."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_next_participant_answers(self, turn_engine):
        thread = turn_engine.threads.start_thread("c1", ["a", "b"], last_speaker_id="a")

        responses = await turn_engine.coordinate_response("c1", human_message())

        assert [r.avatar_id for r in responses] == ["b"]
        assert thread.turn_count == 1
        assert thread.last_speaker_id == "b"


class TestPrioritySummon:
    """Tests for tier 2."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_summoned_avatar_spends_turn(self, turn_engine):
        await turn_engine.presence.grant_new_summon_turns("c1", "c", turns=1)

        responses = await turn_engine.coordinate_response("c1", human_message(content="anyone?"))

        assert [r.avatar_id for r in responses] == ["c"]
        assert (await turn_engine.presence.get("c1", "c")).new_summon_turns_remaining == 0

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_bot_messages_do_not_spend_summons(self, turn_engine):
        await turn_engine.presence.grant_new_summon_turns("c1", "c", turns=1)
        message = human_message(author_id="a", author_is_bot=True, content="hmm")

        await turn_engine.coordinate_response("c1", message)

        assert (await turn_engine.presence.get("c1", "c")).new_summon_turns_remaining == 1


class TestStickyAffinity:
    """Tests for tier 3 and affinity recording in tier 4."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_affinity_wins_when_predicate_agrees(self, turn_engine, collaborators, db):
        await crud.set_affinity(db, "c1", "u1", "b", ttl_ms=60_000)
        collaborators.decision.should_respond.return_value = True

        responses = await turn_engine.coordinate_response("c1", human_message(content="Alpha?"))

        assert [r.avatar_id for r in responses] == ["b"]
        assert responses[0].tier == SelectionTier.STICKY_AFFINITY

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_mention_records_affinity(self, turn_engine, db):
        await crud.set_affinity(db, "c1", "u1", "b", ttl_ms=60_000)

        responses = await turn_engine.coordinate_response("c1", human_message(content="Alpha?"))

        assert [r.avatar_id for r in responses] == ["a"]
        assert await crud.get_affinity(db, "c1", "u1") == "a"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_predicate_error_treated_as_no(self, turn_engine, collaborators, db):
        await crud.set_affinity(db, "c1", "u1", "b", ttl_ms=60_000)
        collaborators.decision.should_respond.side_effect = RuntimeError("classifier down")

        responses = await turn_engine.coordinate_response("c1", human_message(content="Alpha?"))

        assert [r.avatar_id for r in responses] == ["a"]


class TestActiveSpeaker:
    """Tests for tier 5."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_flagged_active_speaker(self, turn_engine, collaborators):
        collaborators.decision.should_respond.return_value = True
        await turn_engine.presence.ensure_presence("c1", "a")
        await turn_engine.presence.ensure_presence("c1", "b")
        await turn_engine.presence.set_active_speaker("c1", "b")

        responses = await turn_engine.coordinate_response("c1", human_message(content="so..."))

        assert [r.avatar_id for r in responses] == ["b"]
        assert responses[0].tier == SelectionTier.ACTIVE_SPEAKER

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_longest_waiting_without_flag(self, turn_engine, collaborators, db):
        collaborators.decision.should_respond.return_value = True
        now = utcnow()
        for avatar_id, minutes in [("a", 5), ("b", 20), ("c", 1)]:
            await crud.ensure_presence(db, "c1", avatar_id)
            await crud.record_turn(db, "c1", avatar_id, now=now - timedelta(minutes=minutes))

        responses = await turn_engine.coordinate_response("c1", human_message(content="so..."))

        assert [r.avatar_id for r in responses] == ["b"]


class TestAmbient:
    """Tests for tier 6 on ambient triggers."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_recent_speaker_not_repeated(self, turn_engine, collaborators):
        collaborators.transport.fetch_recent_messages.return_value = [
            ChannelMessageView(id=f"r{i}", author_id="hook", author_name="Alpha", author_is_bot=True) for i in range(3)
        ]
        # Alpha would otherwise rank first
        await turn_engine.presence.start_session("c1", "a")

        responses = await turn_engine.coordinate_response("c1")

        assert len(responses) == 1
        assert responses[0].avatar_id != "a"
        assert responses[0].tier == SelectionTier.PRESENCE_RANKED

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_nobody_eligible_stays_silent(self, turn_engine, collaborators, db):
        for avatar_id in ["a", "b", "c"]:
            await crud.ensure_presence(db, "c1", avatar_id)
            await crud.record_turn(db, "c1", avatar_id)

        responses = await turn_engine.coordinate_response("c1")

        assert responses == []
        collaborators.decision.should_respond.assert_not_awaited()
        collaborators.generation.generate.assert_not_awaited()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_ambient_trigger_keys_are_unique(self, turn_engine, collaborators):
        await turn_engine.coordinate_response("c1")
        await turn_engine.coordinate_response("c1")

        keys = [call.args[3].trigger_key for call in collaborators.generation.generate.await_args_list]
        assert len(set(keys)) == len(keys)
        assert all(key.startswith("ambient:") for key in keys)

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "scores,last_speaker,expected",
        [
            ([0.6, 0.4], None, "a"),
            ([0.4, 0.35], None, "a"),
            ([0.6, 0.55], "Alpha", None),
            ([0.6, 0.4], "Alpha", None),
            ([0.2, 0.1], None, None),
        ],
    )
    def test_score_fallback_only_considers_top_ranked(self, scores, last_speaker, expected):
        strategy = PresenceRankedStrategy(presence=None, speaker_cache=None)
        ranked = [
            RankedAvatar(avatar=Avatar(id=avatar_id, name=name), presence=None, score=score)
            for (avatar_id, name), score in zip([("a", "Alpha"), ("b", "Bravo")], scores)
        ]
        last_aliases = {last_speaker.lower()} if last_speaker else set()

        chosen = strategy._fallback(ranked, last_aliases)

        assert (chosen.avatar.id if chosen else None) == expected


class TestDecisionFallback:
    """Tests for tier 7."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_asks_predicate_about_top_ranked(self, turn_engine, collaborators):
        async def decide(channel_id, avatar, message):
            return avatar.id == "c"

        collaborators.decision.should_respond.side_effect = decide
        message = human_message(author_id="a", author_is_bot=True, content="nice weather")

        responses = await turn_engine.coordinate_response("c1", message)

        assert [r.avatar_id for r in responses] == ["c"]
        asked = {call.args[1].id for call in collaborators.decision.should_respond.await_args_list}
        assert "a" not in asked

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_nobody_wants_to_speak(self, turn_engine, collaborators):
        responses = await turn_engine.coordinate_response("c1", human_message(content="nice weather"))

        assert responses == []
        collaborators.generation.generate.assert_not_awaited()


class TestCoordinateResponse:
    """Tests for response production and bookkeeping."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_response_cap(self, turn_engine, alpha, bravo):
        turn_engine.coordinator.strategies = [StaticStrategy([alpha, bravo])]

        responses = await turn_engine.coordinate_response("c1", human_message())
        assert [r.avatar_id for r in responses] == ["a"]

        turn_engine.coordinator.max_responses_per_message = 2
        responses = await turn_engine.coordinate_response("c1", human_message(message_id="m2"))
        assert [r.avatar_id for r in responses] == ["a", "b"]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_busy_avatar_skipped(self, turn_engine, alpha, bravo):
        turn_engine.coordinator.strategies = [StaticStrategy([alpha, bravo])]
        await turn_engine.response_lock.acquire("c1", "a")

        responses = await turn_engine.coordinate_response("c1", human_message())

        assert [r.avatar_id for r in responses] == ["b"]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_records_turn(self, turn_engine):
        await turn_engine.coordinate_response("c1", human_message(content="Alpha?"))

        assert (await turn_engine.presence.get("c1", "a")).last_turn_at is not None

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_never_raises(self, turn_engine, collaborators):
        collaborators.identity.get_avatars_in_channel.side_effect = RuntimeError("identity store down")

        assert await turn_engine.coordinate_response("c1", human_message()) == []

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_empty_selection_is_terminal(self, turn_engine, collaborators):
        class Silent(SelectionStrategy):
            tier = SelectionTier.PRESENCE_RANKED

            async def select(self, ctx):
                return Selection(avatars=[])

        turn_engine.coordinator.strategies = [Silent()] + turn_engine.coordinator.strategies

        assert await turn_engine.coordinate_response("c1", human_message(content="Alpha?")) == []
        collaborators.generation.generate.assert_not_awaited()


class TestConversationSession:
    """Tests for per-user conversation sessions."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_session_counts_interactions(self, turn_engine):
        await turn_engine.coordinate_response("c1", human_message(content="Alpha?"))
        await turn_engine.coordinate_response("c1", human_message(message_id="m2", content="Alpha, again"))

        session = await turn_engine.coordinator.get_conversation_session("c1", "u1")
        assert session.avatar_id == "a"
        assert session.message_count == 2

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_quiet_session_expires(self, turn_engine, db):
        await crud.upsert_conversation_session(db, "c1", "u1", "a", now=utcnow() - timedelta(minutes=31))

        assert await turn_engine.coordinator.get_conversation_session("c1", "u1") is None
        assert await crud.get_conversation_session(db, "c1", "u1") is None

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_bot_messages_do_not_open_sessions(self, turn_engine, alpha):
        turn_engine.coordinator.strategies = [StaticStrategy([alpha])]
        message = human_message(author_id="b", author_is_bot=True)

        await turn_engine.coordinate_response("c1", message)

        assert await turn_engine.coordinator.get_conversation_session("c1", "b") is None
