from __future__ import annotations

from unittest.mock import AsyncMock

import pytest

from helpdesk.assistant.client import AssistantReply
from helpdesk.tickets.errors import (
    AssignmentConflictError,
    RatingRejectedError,
    TicketNotFoundError,
    TicketPermissionError,
    TicketValidationError,
)
from helpdesk.tickets.events import (
    AssignmentChanged,
    EscalationRequested,
    MessageAppended,
    TicketCreated,
    TicketStatusChanged,
)
from helpdesk.tickets.handoff import HandoffAction
from helpdesk.tickets.state import TicketPriority, TicketStatus

BOT_USER_ID = "00000000-0000-0000-0000-000000000000"
ACKNOWLEDGMENT = "Connecting you to a support operator..."


@pytest.fixture
def recorded_events(event_bus):
    events = []

    async def record(event):
        events.append(event)

    event_bus.subscribe(record)
    return events


async def _create(service, session, **overrides):
    fields = dict(title="Server offline", description="My server will not boot", priority=TicketPriority.MEDIUM)
    fields.update(overrides)
    return await service.create_ticket(session, **fields)


@pytest.mark.asyncio
async def test_create_ticket_stores_initial_message_without_consulting_assistant(
    ticket_service, customer, assistant, recorded_events, metrics
):
    ticket = await _create(ticket_service, customer, initial_message="  Hello there  ")

    aggregate = await ticket_service.get_ticket(customer, ticket.id)
    assert ticket.status == TicketStatus.OPEN
    assert aggregate.ticket.initial_message == "Hello there"
    assert [(m.body, m.is_bot) for m in aggregate.messages] == [("Hello there", False)]
    assistant.complete.assert_not_awaited()
    assert isinstance(recorded_events[0], TicketCreated)
    assert metrics.counter("tickets_created_total").value(labels={"priority": "medium"}) == 1


@pytest.mark.asyncio
async def test_create_ticket_requires_title(ticket_service, customer):
    with pytest.raises(TicketValidationError):
        await _create(ticket_service, customer, title="   ")


@pytest.mark.asyncio
async def test_create_ticket_notifies_without_failing(
    ticket_repository, profile_repository, coordinator, customer
):
    from helpdesk.tickets.service import TicketService

    notifier = AsyncMock()
    notifier.notify = AsyncMock(return_value=False)
    service = TicketService(ticket_repository, profile_repository, coordinator, notifier=notifier)

    ticket = await _create(service, customer)

    notifier.notify.assert_awaited_once()
    summary = notifier.notify.await_args.args[0]
    assert summary.ticket_id == ticket.id
    assert summary.customer_email == "customer@example.com"


@pytest.mark.asyncio
async def test_customers_only_see_their_own_tickets(ticket_service, customer, other_customer, agent):
    mine = await _create(ticket_service, customer)
    await _create(ticket_service, other_customer)

    assert [t.id for t in await ticket_service.list_tickets(customer)] == [mine.id]
    assert len(await ticket_service.list_tickets(agent)) == 2
    with pytest.raises(TicketNotFoundError):
        await ticket_service.get_ticket(other_customer, mine.id)


@pytest.mark.asyncio
async def test_customer_message_gets_assistant_reply(
    ticket_service, customer, assistant, recorded_events
):
    ticket = await _create(ticket_service, customer)

    result = await ticket_service.post_message(customer, ticket.id, body="hello")

    assert result.handoff.action == HandoffAction.ASSISTANT_REPLIED
    conversation = assistant.complete.await_args.args[0]
    assert [(turn.role, turn.content) for turn in conversation] == [("user", "hello")]
    aggregate = await ticket_service.get_ticket(customer, ticket.id)
    bodies = [(m.body, m.is_bot, m.user_id) for m in aggregate.messages]
    assert bodies == [
        ("hello", False, customer.user_id),
        ("Have you tried restarting the server?", True, BOT_USER_ID),
    ]
    assert sum(isinstance(event, MessageAppended) for event in recorded_events) == 2


@pytest.mark.asyncio
async def test_take_over_silences_assistant(
    ticket_service, staff_profiles, customer, agent, assistant, recorded_events
):
    ticket = await _create(ticket_service, customer)
    await ticket_service.post_message(customer, ticket.id, body="hello")

    outcome = await ticket_service.take_over(agent, ticket.id)

    assert outcome.assignment.support_user_id == agent.user_id
    assert outcome.announcement.is_bot is True
    assert "Peter" in outcome.announcement.body
    assert any(isinstance(event, AssignmentChanged) for event in recorded_events)

    assistant.complete.reset_mock()
    result = await ticket_service.post_message(customer, ticket.id, body="are you there?")

    assert result.handoff.action == HandoffAction.SUPPRESSED_ASSIGNED
    assistant.complete.assert_not_awaited()
    aggregate = await ticket_service.get_ticket(agent, ticket.id)
    assert aggregate.assignment.support_user_id == agent.user_id
    assert [m.body for m in aggregate.messages][-1] == "are you there?"


@pytest.mark.asyncio
async def test_urgent_ticket_never_gets_automated_reply(ticket_service, customer, assistant):
    ticket = await _create(ticket_service, customer, priority=TicketPriority.URGENT)

    result = await ticket_service.post_message(customer, ticket.id, body="Everything is down")

    assert result.handoff.action == HandoffAction.SUPPRESSED_URGENT
    assistant.complete.assert_not_awaited()


@pytest.mark.asyncio
async def test_staff_message_does_not_trigger_assistant(ticket_service, customer, agent, assistant):
    ticket = await _create(ticket_service, customer)

    result = await ticket_service.post_message(agent, ticket.id, body="Looking into it")

    assert result.handoff is None
    assistant.complete.assert_not_awaited()


@pytest.mark.asyncio
async def test_escalation_persists_nothing_from_assistant(
    ticket_service, customer, assistant, recorded_events
):
    assistant.complete = AsyncMock(return_value=AssistantReply(reply=None, escalate=True))
    ticket = await _create(ticket_service, customer)

    result = await ticket_service.post_message(customer, ticket.id, body="I want a human")

    assert result.handoff.action == HandoffAction.ESCALATED
    assert result.handoff.acknowledgment == ACKNOWLEDGMENT
    aggregate = await ticket_service.get_ticket(customer, ticket.id)
    assert [m.body for m in aggregate.messages] == ["I want a human"]
    assert aggregate.ticket.needs_attention is True
    assert aggregate.assignment is None
    assert any(isinstance(event, EscalationRequested) for event in recorded_events)


@pytest.mark.asyncio
async def test_take_over_clears_needs_attention(ticket_service, staff_profiles, customer, agent, assistant):
    assistant.complete = AsyncMock(return_value=AssistantReply(reply=None, escalate=True))
    ticket = await _create(ticket_service, customer)
    await ticket_service.post_message(customer, ticket.id, body="operator please")

    await ticket_service.take_over(agent, ticket.id)

    assert (await ticket_service.get_ticket(agent, ticket.id)).ticket.needs_attention is False


@pytest.mark.asyncio
async def test_take_over_conflicts_with_other_agent(
    ticket_service, staff_profiles, customer, agent, second_agent
):
    ticket = await _create(ticket_service, customer)
    await ticket_service.take_over(agent, ticket.id)

    again = await ticket_service.take_over(agent, ticket.id)
    assert again.announcement is None

    with pytest.raises(AssignmentConflictError):
        await ticket_service.take_over(second_agent, ticket.id)


@pytest.mark.asyncio
async def test_customers_cannot_take_over(ticket_service, customer):
    ticket = await _create(ticket_service, customer)

    with pytest.raises(TicketPermissionError):
        await ticket_service.take_over(customer, ticket.id)


@pytest.mark.asyncio
async def test_transfer_leaves_exactly_one_assignment(
    ticket_service, staff_profiles, customer, agent, second_agent
):
    ticket = await _create(ticket_service, customer)
    with pytest.raises(AssignmentConflictError):
        await ticket_service.transfer(agent, ticket.id, agent_id=second_agent.user_id)
    await ticket_service.take_over(agent, ticket.id)

    outcome = await ticket_service.transfer(agent, ticket.id, agent_id=second_agent.user_id)

    assert outcome.assignment.support_user_id == second_agent.user_id
    assert outcome.assignment.assigned_by == agent.user_id
    assert "Eva" in outcome.announcement.body
    aggregate = await ticket_service.get_ticket(agent, ticket.id)
    assert aggregate.assignment.support_user_id == second_agent.user_id


@pytest.mark.asyncio
async def test_transfer_target_must_be_staff(ticket_service, staff_profiles, customer, agent):
    ticket = await _create(ticket_service, customer)
    await ticket_service.take_over(agent, ticket.id)

    with pytest.raises(TicketValidationError):
        await ticket_service.transfer(agent, ticket.id, agent_id=customer.user_id)


@pytest.mark.asyncio
async def test_release_reenables_assistant(ticket_service, staff_profiles, customer, agent, assistant):
    ticket = await _create(ticket_service, customer)
    await ticket_service.take_over(agent, ticket.id)

    assert await ticket_service.release(agent, ticket.id) is True
    assert await ticket_service.release(agent, ticket.id) is False

    result = await ticket_service.post_message(customer, ticket.id, body="hello again")
    assert result.handoff.action == HandoffAction.ASSISTANT_REPLIED


@pytest.mark.asyncio
async def test_status_changes_keep_closed_at_consistent(ticket_service, customer, agent, recorded_events):
    ticket = await _create(ticket_service, customer)

    closed = await ticket_service.change_status(customer, ticket.id, new_status=TicketStatus.CLOSED)
    assert closed.status == TicketStatus.CLOSED and closed.closed_at is not None

    reopened = await ticket_service.change_status(agent, ticket.id, new_status=TicketStatus.IN_PROGRESS)
    assert reopened.closed_at is None

    unchanged = await ticket_service.change_status(agent, ticket.id, new_status=TicketStatus.IN_PROGRESS)
    assert unchanged.updated_at == reopened.updated_at
    assert sum(isinstance(event, TicketStatusChanged) for event in recorded_events) == 2


@pytest.mark.asyncio
async def test_customer_cannot_mark_solved(ticket_service, customer):
    ticket = await _create(ticket_service, customer)

    with pytest.raises(TicketPermissionError):
        await ticket_service.change_status(customer, ticket.id, new_status=TicketStatus.SOLVED)


@pytest.mark.asyncio
async def test_closing_releases_assignment(ticket_service, staff_profiles, customer, agent):
    ticket = await _create(ticket_service, customer)
    await ticket_service.take_over(agent, ticket.id)

    await ticket_service.change_status(agent, ticket.id, new_status=TicketStatus.CLOSED)

    assert (await ticket_service.get_ticket(agent, ticket.id)).assignment is None


@pytest.mark.asyncio
async def test_message_on_closed_ticket_reopens_it(ticket_service, customer, recorded_events):
    ticket = await _create(ticket_service, customer)
    await ticket_service.change_status(customer, ticket.id, new_status=TicketStatus.CLOSED)

    result = await ticket_service.post_message(customer, ticket.id, body="It broke again")

    assert result.ticket.status == TicketStatus.OPEN
    assert result.ticket.closed_at is None
    reasons = [event.reason for event in recorded_events if isinstance(event, TicketStatusChanged)]
    assert reasons == ["manual", "reopened"]


@pytest.mark.asyncio
async def test_priority_change_is_staff_only(ticket_service, customer, agent):
    ticket = await _create(ticket_service, customer)

    with pytest.raises(TicketPermissionError):
        await ticket_service.change_priority(customer, ticket.id, new_priority=TicketPriority.HIGH)
    updated = await ticket_service.change_priority(agent, ticket.id, new_priority=TicketPriority.HIGH)

    assert updated.priority == TicketPriority.HIGH


@pytest.mark.asyncio
async def test_rating_requires_closed_ticket_and_is_single_use(ticket_service, customer, admin):
    ticket = await _create(ticket_service, customer)

    with pytest.raises(RatingRejectedError):
        await ticket_service.rate_ticket(customer, ticket.id, rating=5)

    await ticket_service.change_status(customer, ticket.id, new_status=TicketStatus.CLOSED)
    rating = await ticket_service.rate_ticket(customer, ticket.id, rating=5, feedback="  Great  ")
    assert rating.feedback == "Great"

    with pytest.raises(RatingRejectedError):
        await ticket_service.rate_ticket(customer, ticket.id, rating=3)

    summaries = await ticket_service.list_ratings(admin)
    assert [summary.rating.rating for summary in summaries] == [5]


@pytest.mark.asyncio
async def test_ratings_list_is_admin_only(ticket_service, agent):
    with pytest.raises(TicketPermissionError):
        await ticket_service.list_ratings(agent)
