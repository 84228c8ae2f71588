"""Test suite for the message synchronization engine."""

import asyncio
from datetime import timedelta

import pytest

from conftest import ScriptedMessageDirectory, make_record
from widget_chat.domain.models import (
    Conversation,
    DateMarker,
    ErrorMessage,
    HistoryPage,
    ReplyEnvelope,
    Sender,
    local_now,
)
from widget_chat.domain.normalize import local_date_string
from widget_chat.errors import (
    ERROR_MESSAGES,
    ErrorKind,
    NormalizationFallback,
    ReportedAIFailure,
    TransportFailure,
)
from widget_chat.repositories.memory import InMemoryMessageDirectory
from widget_chat.services.messages import MessageSyncEngine, SendStatus


async def until(predicate, attempts: int = 50) -> None:
    """Yield to the event loop until predicate holds."""
    for _ in range(attempts):
        if predicate():
            return
        await asyncio.sleep(0)
    raise AssertionError("condition not reached")


def today() -> str:
    return local_date_string(local_now())


def ai_reply(id: int, content: str) -> ReplyEnvelope:
    return ReplyEnvelope(
        status="success",
        message="Message created",
        data=make_record(id, sender="assistant", content=content),
    )


@pytest.mark.asyncio
async def test_load_messages_without_conversation(directory, settings):
    """Test that no active conversation yields an empty, exhausted timeline."""
    engine = MessageSyncEngine(directory, settings=settings)

    loaded = await engine.load_messages()

    assert loaded == []
    assert engine.messages == []
    assert engine.has_more_messages is False
    assert engine.is_loaded is True
    assert directory.history_calls == []


@pytest.mark.asyncio
async def test_load_messages_sorts_oldest_first(directory, settings, conversation):
    """Test that the first page replaces the timeline in ascending order."""
    now = local_now()
    directory.pages[None] = HistoryPage(
        items=[
            make_record(12, "assistant", "second", now - timedelta(minutes=1)),
            make_record(11, "visitor", "first", now - timedelta(minutes=2)),
        ],
        has_more=True,
        next_before_id=11,
    )
    engine = MessageSyncEngine(directory, conversation=conversation, settings=settings)

    await engine.load_messages()

    assert [m.text for m in engine.messages] == ["first", "second"]
    assert engine.has_more_messages is True
    assert engine.next_before_id == 11
    assert directory.history_calls == [("C1", settings.initial_page_size, None)]


@pytest.mark.asyncio
async def test_load_messages_failure_keeps_timeline(directory, settings, conversation):
    """Test that a failed reload leaves the timeline untouched."""
    directory.pages[None] = HistoryPage(items=[make_record(1)], has_more=False)
    engine = MessageSyncEngine(directory, conversation=conversation, settings=settings)
    await engine.load_messages()

    directory.pages[None] = TransportFailure("Service unavailable", status_code=503)
    loaded = await engine.load_messages()

    assert loaded == []
    assert [m.id for m in engine.messages] == [1]
    assert engine.has_more_messages is False
    assert engine.is_loaded is True


@pytest.mark.asyncio
async def test_optimistic_entries_then_in_place_replacement(directory, settings, conversation):
    """Test pending and thinking slots appear before the backend answers and are replaced in place."""
    directory.pages[None] = HistoryPage(
        items=[
            make_record(1, "date", today(), message_type="date"),
            make_record(2, "visitor", "earlier"),
        ]
    )
    engine = MessageSyncEngine(directory, conversation=conversation, settings=settings)
    await engine.load_messages()

    directory.reply_gate = asyncio.Event()
    directory.replies.append(ai_reply(4, "answer"))
    task = asyncio.create_task(engine.send_message("hi"))
    await until(lambda: directory.calls)

    pending_view = engine.messages
    assert len(pending_view) == 4
    pending, thinking = pending_view[-2:]
    assert pending.sender == Sender.VISITOR and pending.text == "hi"
    assert pending.is_sending is True
    assert thinking.sender == Sender.ASSISTANT and thinking.is_thinking is True
    assert sum(1 for m in pending_view if m.is_thinking) == 1
    assert engine.is_sending is True

    directory.reply_gate.set()
    outcome = await task

    resolved = engine.messages
    assert outcome.status == SendStatus.DELIVERED
    assert len(resolved) == len(pending_view)
    assert resolved[2].is_sending is False and resolved[2].is_successful is True
    assert resolved[2].text == "hi"
    assert resolved[3].is_thinking is False
    assert resolved[3].id == 4 and resolved[3].text == "answer"
    assert engine.is_sending is False


@pytest.mark.asyncio
async def test_send_success_scenario(directory, settings, conversation):
    """Test a first message in an empty conversation."""
    engine = MessageSyncEngine(directory, conversation=conversation, settings=settings)
    await engine.load_messages()
    directory.replies.append(ai_reply(11, "Hai juga!"))

    outcome = await engine.send_message("Halo")

    marker, visitor, assistant = engine.messages
    assert isinstance(marker, DateMarker) and marker.text == today()
    assert visitor.sender == Sender.VISITOR and visitor.text == "Halo"
    assert visitor.is_successful is True and visitor.can_retry is False
    assert assistant.sender == Sender.ASSISTANT and assistant.text == "Hai juga!"
    assert assistant.is_successful is True
    assert outcome.reply_message.id == 11
    assert directory.calls[0].message_content == "Halo"
    assert directory.calls[0].engine == "gemini"


@pytest.mark.asyncio
async def test_send_network_failure_scenario(directory, settings, conversation):
    """Test a transport failure leaves a retryable visitor message and a system error."""
    engine = MessageSyncEngine(directory, conversation=conversation, settings=settings)
    await engine.load_messages()
    directory.replies.append(TransportFailure("Network Error"))

    outcome = await engine.send_message("Halo")

    marker, visitor, system = engine.messages
    assert isinstance(marker, DateMarker) and marker.text == today()
    assert visitor.text == "Halo"
    assert visitor.is_sending is False and visitor.is_successful is False
    assert visitor.can_retry is True
    assert isinstance(system, ErrorMessage)
    assert system.sender == Sender.SYSTEM
    assert system.text == ERROR_MESSAGES[ErrorKind.NETWORK_ERROR]
    assert outcome.status == SendStatus.TRANSPORT_FAILED
    assert isinstance(outcome.error, TransportFailure)
    assert engine.is_sending is False


@pytest.mark.asyncio
async def test_unrecognized_transport_error_shows_backend_text(directory, settings, conversation):
    """Test the backend string is the last-resort fallback for unknown transport errors."""
    engine = MessageSyncEngine(directory, conversation=conversation, settings=settings)
    directory.replies.append(
        TransportFailure("Bad request", status_code=422, payload={"message": "Pesan terlalu panjang"})
    )

    await engine.send_message("Halo")

    assert engine.messages[-1].text == "Pesan terlalu panjang"


@pytest.mark.asyncio
async def test_reported_ai_failure_confirms_visitor_message(directory, settings, conversation):
    """Test a soft AI failure keeps the persisted visitor message and shows a safe error."""
    engine = MessageSyncEngine(directory, conversation=conversation, settings=settings)
    directory.replies.append(
        ReplyEnvelope(
            status="warning",
            message="AI response failed: upstream returned 500 (trace abc123)",
            data=make_record(21, "visitor", "Halo"),
        )
    )

    outcome = await engine.send_message("Halo")

    visitor, reply = engine.messages[-2:]
    assert outcome.status == SendStatus.AI_FAILED
    assert isinstance(outcome.error, ReportedAIFailure)
    assert visitor.id == 21
    assert visitor.is_successful is True and visitor.is_sending is False
    assert isinstance(reply, ErrorMessage)
    assert reply.is_successful is False and reply.can_retry is True
    assert reply.text == ERROR_MESSAGES[ErrorKind.AI_RESPONSE_FAILED]
    assert "trace abc123" not in reply.text


@pytest.mark.asyncio
async def test_pair_payload_uses_both_records(directory, settings, conversation):
    """Test a payload carrying both persisted messages."""
    engine = MessageSyncEngine(directory, conversation=conversation, settings=settings)
    directory.replies.append(
        ReplyEnvelope(
            data={
                "visitor_message": make_record(30, "visitor", "Halo"),
                "ai_message": make_record(31, "assistant", "Hai"),
            }
        )
    )

    outcome = await engine.send_message("Halo")

    assert outcome.status == SendStatus.DELIVERED
    assert [m.id for m in engine.messages[-2:]] == [30, 31]


@pytest.mark.asyncio
async def test_date_marker_inserted_once_per_day(directory, settings, conversation):
    """Test two sends on the same day produce a single date marker."""
    engine = MessageSyncEngine(directory, conversation=conversation, settings=settings)
    directory.replies.extend([ai_reply(2, "one"), TransportFailure("Network Error")])

    await engine.send_message("first")
    await engine.send_message("second")

    markers = [m for m in engine.messages if isinstance(m, DateMarker)]
    assert len(markers) == 1
    assert markers[0].text == today()
    assert isinstance(engine.messages[0], DateMarker)


@pytest.mark.asyncio
async def test_date_marker_follows_older_days(directory, settings, conversation):
    """Test today's marker goes after history from previous days."""
    yesterday = local_now() - timedelta(days=1)
    directory.pages[None] = HistoryPage(
        items=[make_record(1, "visitor", "old", yesterday), make_record(2, "assistant", "old reply", yesterday)]
    )
    engine = MessageSyncEngine(directory, conversation=conversation, settings=settings)
    await engine.load_messages()
    directory.replies.append(ai_reply(4, "new reply"))

    await engine.send_message("new")

    texts = [m.text for m in engine.messages]
    assert texts == ["old", "old reply", today(), "new", "new reply"]


@pytest.mark.asyncio
async def test_send_noop_for_blank_text_or_missing_conversation(directory, settings, conversation):
    """Test blank text and a missing conversation are silent no-ops."""
    detached = MessageSyncEngine(directory, settings=settings)
    engine = MessageSyncEngine(directory, conversation=conversation, settings=settings)

    assert (await detached.send_message("hello")).status == SendStatus.SKIPPED
    assert (await engine.send_message("")).status == SendStatus.SKIPPED
    assert (await engine.send_message("   \n")).status == SendStatus.SKIPPED
    assert engine.messages == []
    assert directory.calls == []


@pytest.mark.asyncio
async def test_second_send_rejected_while_in_flight(directory, settings, conversation):
    """Test the engine refuses a concurrent send."""
    engine = MessageSyncEngine(directory, conversation=conversation, settings=settings)
    directory.reply_gate = asyncio.Event()
    directory.replies.append(ai_reply(2, "answer"))

    first = asyncio.create_task(engine.send_message("one"))
    await until(lambda: directory.calls)
    second = await engine.send_message("two")

    assert second.status == SendStatus.REJECTED
    assert [m.text for m in engine.messages if m.sender == Sender.VISITOR] == ["one"]

    directory.reply_gate.set()
    assert (await first).status == SendStatus.DELIVERED
    assert len(directory.calls) == 1


@pytest.mark.asyncio
async def test_temporary_ids_are_unique(directory, settings, conversation):
    """Test every optimistic slot gets its own identifier."""
    engine = MessageSyncEngine(directory, conversation=conversation, settings=settings)
    directory.replies.extend([TransportFailure("Network Error"), TransportFailure("Network Error")])

    await engine.send_message("a")
    await engine.send_message("a")

    ids = [m.id for m in engine.messages]
    assert len(ids) == len(set(ids))


@pytest.mark.asyncio
async def test_injected_id_factory(directory, settings, conversation):
    """Test temporary identifiers come from the injected factory."""
    tokens = iter(["t1", "t2", "t3"])
    engine = MessageSyncEngine(
        directory,
        conversation=conversation,
        settings=settings,
        id_factory=lambda: next(tokens),
    )
    directory.reply_gate = asyncio.Event()
    directory.replies.append(ai_reply(2, "answer"))

    task = asyncio.create_task(engine.send_message("hi"))
    await until(lambda: directory.calls)
    assert [m.id for m in engine.messages] == ["temp-t1", "thinking-t2"]

    directory.reply_gate.set()
    await task


@pytest.mark.asyncio
async def test_send_timeout_is_a_transport_failure(directory, settings, conversation):
    """Test an unanswered send is bounded by the operation timeout."""
    engine = MessageSyncEngine(
        directory,
        conversation=conversation,
        settings=settings.model_copy(update={"operation_timeout": 0.05}),
    )
    directory.reply_gate = asyncio.Event()

    outcome = await engine.send_message("hello")

    assert outcome.status == SendStatus.TRANSPORT_FAILED
    assert engine.messages[-1].text == ERROR_MESSAGES[ErrorKind.TIMEOUT_ERROR]
    assert engine.is_sending is False


@pytest.mark.asyncio
async def test_pagination_moves_strictly_backwards(backend, settings):
    """Test older pages load until history is exhausted, each strictly before the cursor."""
    visitor = await backend.create_visitor()
    conversation = await backend.create_conversation(visitor.uuid)
    for i in range(45):
        await backend.add_message(
            conversation.uuid,
            Sender.VISITOR if i % 2 == 0 else Sender.ASSISTANT,
            f"message {i}",
        )

    engine = MessageSyncEngine(
        InMemoryMessageDirectory(backend),
        conversation=conversation,
        settings=settings.model_copy(update={"initial_page_size": 10, "older_page_size": 10}),
    )
    await engine.load_messages()
    assert len(engine.messages) == 10

    pages = 0
    while engine.has_more_messages:
        before_id = engine.next_before_id
        older = await engine.load_older_messages()
        assert older
        assert all(m.id < before_id for m in older)
        pages += 1

    assert pages == 4
    assert [m.text for m in engine.messages] == [f"message {i}" for i in range(45)]
    assert await engine.load_older_messages() == []
    assert len(engine.messages) == 45


@pytest.mark.asyncio
async def test_load_older_without_cursor_marks_exhausted(directory, settings, conversation):
    """Test a missing cursor ends pagination instead of refetching."""
    directory.pages[None] = HistoryPage(items=[make_record(5)], has_more=True, next_before_id=None)
    engine = MessageSyncEngine(directory, conversation=conversation, settings=settings)
    await engine.load_messages()

    assert await engine.load_older_messages() == []
    assert engine.has_more_messages is False
    assert len(directory.history_calls) == 1


@pytest.mark.asyncio
async def test_load_older_ignores_reentrant_calls(directory, settings, conversation):
    """Test rapid scroll events trigger a single older-page fetch."""
    base = local_now() - timedelta(minutes=10)
    directory.pages[None] = HistoryPage(
        items=[make_record(5, created_at=base + timedelta(minutes=2))],
        has_more=True,
        next_before_id=5,
    )
    directory.pages[5] = HistoryPage(
        items=[
            make_record(3, created_at=base),
            make_record(4, created_at=base + timedelta(minutes=1)),
        ],
        has_more=False,
        next_before_id=3,
    )
    engine = MessageSyncEngine(directory, conversation=conversation, settings=settings)
    await engine.load_messages()

    directory.history_gate = asyncio.Event()
    first = asyncio.create_task(engine.load_older_messages())
    await until(lambda: len(directory.history_calls) == 2)
    assert engine.is_loading_older_messages is True
    assert await engine.load_older_messages() == []

    directory.history_gate.set()
    older = await first

    assert [m.id for m in older] == [3, 4]
    assert [m.id for m in engine.messages] == [3, 4, 5]
    assert len(directory.history_calls) == 2
    assert engine.is_loading_older_messages is False


@pytest.mark.asyncio
async def test_load_older_failure_keeps_state(directory, settings, conversation):
    """Test a failed older-page load changes nothing."""
    directory.pages[None] = HistoryPage(items=[make_record(5)], has_more=True, next_before_id=5)
    directory.pages[5] = TransportFailure("Network Error")
    engine = MessageSyncEngine(directory, conversation=conversation, settings=settings)
    await engine.load_messages()

    assert await engine.load_older_messages() == []
    assert [m.id for m in engine.messages] == [5]
    assert engine.has_more_messages is True
    assert engine.next_before_id == 5
    assert engine.is_loading_older_messages is False


@pytest.mark.asyncio
async def test_conversation_switch_is_hard_reset(settings):
    """Test switching conversations discards the timeline and cursor."""
    directory = ScriptedMessageDirectory()
    first = Conversation(uuid="C1")
    second = Conversation(uuid="C2")
    directory.pages[None] = HistoryPage(items=[make_record(1)], has_more=True, next_before_id=1)
    engine = MessageSyncEngine(directory, settings=settings)

    assert await engine.set_conversation(first) is True
    assert [m.id for m in engine.messages] == [1]

    directory.pages[None] = HistoryPage(items=[], has_more=False)
    assert await engine.set_conversation(second) is True
    assert engine.messages == []
    assert engine.has_more_messages is False
    assert engine.next_before_id is None
    assert directory.history_calls[-1][0] == "C2"

    assert await engine.set_conversation(Conversation(uuid="C2", title="Renamed")) is False
    assert len(directory.history_calls) == 2


@pytest.mark.asyncio
async def test_stale_history_discarded_after_switch(settings):
    """Test a history page for a previous conversation never lands in the timeline."""
    directory = ScriptedMessageDirectory()
    directory.pages[None] = HistoryPage(items=[make_record(1)])
    directory.history_gate = asyncio.Event()
    engine = MessageSyncEngine(directory, settings=settings)

    slow = asyncio.create_task(engine.set_conversation(Conversation(uuid="C1")))
    await until(lambda: directory.history_calls)
    engine._conversation = Conversation(uuid="C2")
    directory.history_gate.set()
    await slow

    assert engine.messages == []


@pytest.mark.asyncio
async def test_history_date_records_become_markers(directory, settings, conversation):
    """Test date records in history are decoded as markers."""
    directory.pages[None] = HistoryPage(
        items=[make_record(1, "assistant", "2024-03-05", created_at=None)]
    )
    engine = MessageSyncEngine(directory, conversation=conversation, settings=settings)

    await engine.load_messages()

    (marker,) = engine.messages
    assert isinstance(marker, DateMarker)
    assert marker.sender == Sender.DATE
    assert marker.date == "2024-03-05"


@pytest.mark.asyncio
async def test_retry_creates_new_slot(directory, settings, conversation):
    """Test retrying a failed send leaves the failed slot and appends a new one."""
    engine = MessageSyncEngine(directory, conversation=conversation, settings=settings)
    directory.replies.extend([TransportFailure("Network Error"), ai_reply(7, "ok")])
    failed = (await engine.send_message("Halo")).visitor_message

    outcome = await engine.retry(failed.id)

    assert outcome.status == SendStatus.DELIVERED
    visitor_texts = [m for m in engine.messages if m.sender == Sender.VISITOR]
    assert len(visitor_texts) == 2
    assert visitor_texts[0].is_successful is False
    assert visitor_texts[1].is_successful is True
    assert directory.calls[1].message_content == "Halo"


@pytest.mark.asyncio
async def test_on_messages_added_notified(directory, settings, conversation):
    """Test the observer fires for appends and replacements."""
    notifications = []
    engine = MessageSyncEngine(
        directory,
        conversation=conversation,
        settings=settings,
        on_messages_added=lambda: notifications.append(len(engine.messages)),
    )
    directory.replies.append(ai_reply(2, "answer"))

    await engine.send_message("hi")

    # pending, thinking, two replacements, date marker
    assert len(notifications) == 5


@pytest.mark.asyncio
async def test_reply_with_untyped_metadata_is_delivered(directory, settings, conversation):
    """Test loosely typed reply fields do not turn a delivered reply into a failure"""
    engine = MessageSyncEngine(directory, conversation=conversation, settings=settings)
    directory.replies.append(
        ReplyEnvelope(data=make_record(11, "assistant", "Hai juga!", metadata=["tokens", 12]))
    )

    outcome = await engine.send_message("Halo")

    visitor, reply = engine.messages[-2:]
    assert outcome.status == SendStatus.DELIVERED
    assert visitor.is_successful is True and visitor.can_retry is False
    assert reply.text == "Hai juga!"
    assert reply.metadata == {"value": ["tokens", 12]}


@pytest.mark.asyncio
async def test_undecodable_reply_keeps_visitor_confirmed(directory, settings, conversation):
    """Test an unreadable AI record after a successful call never marks the visitor message failed"""
    engine = MessageSyncEngine(directory, conversation=conversation, settings=settings)
    directory.replies.append(
        ReplyEnvelope(
            data={
                "visitor_message": make_record(30, "visitor", "Halo"),
                "ai_message": "Hai juga!",
            }
        )
    )

    outcome = await engine.send_message("Halo")

    visitor, reply = engine.messages[-2:]
    assert outcome.status == SendStatus.AI_FAILED
    assert isinstance(outcome.error, NormalizationFallback)
    assert visitor.id == 30
    assert visitor.is_successful is True and visitor.can_retry is False
    assert isinstance(reply, ErrorMessage)
    assert reply.text == ERROR_MESSAGES[ErrorKind.GENERAL_ERROR]


@pytest.mark.asyncio
async def test_undecodable_visitor_record_falls_back_to_pending(directory, settings, conversation):
    """Test an unreadable visitor record confirms the locally sent message"""
    engine = MessageSyncEngine(directory, conversation=conversation, settings=settings)
    directory.replies.append(
        ReplyEnvelope(
            data={
                "visitor_message": ["not", "a", "record"],
                "ai_message": make_record(31, "assistant", "Hai"),
            }
        )
    )

    outcome = await engine.send_message("Halo")

    visitor, reply = engine.messages[-2:]
    assert outcome.status == SendStatus.DELIVERED
    assert visitor.text == "Halo" and visitor.is_successful is True
    assert reply.id == 31


@pytest.mark.asyncio
async def test_one_bad_history_record_does_not_abort_load(directory, settings, conversation):
    """Test a malformed record is coerced or skipped without losing the page"""
    base = local_now() - timedelta(minutes=10)
    directory.pages[None] = HistoryPage(
        items=[
            make_record(1, created_at=base),
            make_record(2, "assistant", "odd metadata", base + timedelta(minutes=1), metadata="{}"),
            make_record(3, "assistant", "bad keys", base + timedelta(minutes=2), metadata={1: "x"}),
            make_record(4, created_at=base + timedelta(minutes=3), engine=7),
        ],
        has_more=True,
        next_before_id=1,
    )
    engine = MessageSyncEngine(directory, conversation=conversation, settings=settings)

    loaded = await engine.load_messages()

    assert [m.id for m in loaded] == [1, 2, 4]
    assert engine.messages[1].metadata == {"value": "{}"}
    assert engine.messages[2].engine == "7"
    assert engine.has_more_messages is True


@pytest.mark.asyncio
async def test_error_tips_setting(directory, settings, conversation):
    """Test troubleshooting tips follow the error message when enabled"""
    engine = MessageSyncEngine(
        directory,
        conversation=conversation,
        settings=settings.model_copy(update={"error_tips": True}),
    )
    directory.replies.append(TransportFailure("Network Error"))

    await engine.send_message("Halo")

    text = engine.messages[-1].text
    assert text.startswith(ERROR_MESSAGES[ErrorKind.NETWORK_ERROR])
    assert "Tips:" in text
