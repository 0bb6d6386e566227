from datetime import datetime, timezone
from unittest.mock import AsyncMock

import pytest
from fastapi.testclient import TestClient

from helpdesk.dependencies.auth import get_session_context
from helpdesk.dependencies.services import get_profile_repository, get_reaper, get_ticket_service
from helpdesk.main import create_app
from helpdesk.profiles.models import Profile, SessionContext
from helpdesk.tickets.errors import (
    AssignmentConflictError,
    TicketNotFoundError,
    TicketPermissionError,
    TicketStorageError,
)
from helpdesk.tickets.handoff import HandoffAction, HandoffResult
from helpdesk.tickets.models import (
    RatingSummary,
    Ticket,
    TicketAggregate,
    TicketAssignment,
    TicketMessage,
    TicketRating,
)
from helpdesk.tickets.reaper import ClosedTicket, ReaperReport
from helpdesk.tickets.service import AssignmentOutcome, MessagePostResult
from helpdesk.tickets.state import TicketPriority, TicketStatus

NOW = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)

CUSTOMER = SessionContext(user_id="customer-1", nickname="Jana")
AGENT = SessionContext(user_id="agent-1", nickname="Peter", is_support=True)
ADMIN = SessionContext(user_id="admin-1", is_admin=True)


def _make_ticket(*, status: TicketStatus = TicketStatus.OPEN) -> Ticket:
    return Ticket(
        id="t-1",
        user_id="customer-1",
        title="Bot offline",
        description="Discord bot stopped responding",
        status=status,
        priority=TicketPriority.HIGH,
        created_at=NOW,
        updated_at=NOW,
    )


def _make_message(body: str, *, user_id: str = "customer-1", is_bot: bool = False) -> TicketMessage:
    return TicketMessage(id=f"m-{body[:4]}", ticket_id="t-1", user_id=user_id, body=body, is_bot=is_bot, created_at=NOW)


@pytest.fixture
def api():
    app = create_app()
    service = AsyncMock()
    state = {"session": CUSTOMER}

    async def override_service():
        return service

    async def override_session():
        return state["session"]

    app.dependency_overrides[get_ticket_service] = override_service
    app.dependency_overrides[get_session_context] = override_session

    client = TestClient(app)
    try:
        yield client, service, state, app
    finally:
        app.dependency_overrides.clear()


def test_create_ticket_returns_created(api):
    client, service, _, _ = api
    service.create_ticket = AsyncMock(return_value=_make_ticket())

    response = client.post(
        "/tickets",
        json={"title": "Bot offline", "description": "Discord bot stopped responding", "priority": "high"},
    )

    assert response.status_code == 201
    body = response.json()
    assert body["id"] == "t-1"
    assert body["status"] == "open"
    assert body["needs_attention"] is False
    kwargs = service.create_ticket.await_args.kwargs
    assert kwargs["priority"] == TicketPriority.HIGH
    assert kwargs["initial_message"] is None


def test_create_ticket_rejects_blank_title(api):
    client, service, _, _ = api

    response = client.post("/tickets", json={"title": "", "description": "x"})

    assert response.status_code == 422
    service.create_ticket.assert_not_called()


def test_list_tickets_filters_by_status(api):
    client, service, _, _ = api
    service.list_tickets = AsyncMock(return_value=[_make_ticket(status=TicketStatus.SOLVED)])

    response = client.get("/tickets", params={"status": "solved"})

    assert response.status_code == 200
    assert [item["status"] for item in response.json()] == ["solved"]
    assert service.list_tickets.await_args.kwargs == {"status": TicketStatus.SOLVED}


def test_ticket_detail_includes_conversation(api):
    client, service, _, _ = api
    assignment = TicketAssignment(
        id="a-1", ticket_id="t-1", support_user_id="agent-1", assigned_by="agent-1", created_at=NOW
    )
    service.get_ticket = AsyncMock(
        return_value=TicketAggregate(
            ticket=_make_ticket(),
            messages=[_make_message("hello"), _make_message("hi there", user_id="bot", is_bot=True)],
            assignment=assignment,
        )
    )

    response = client.get("/tickets/t-1")

    assert response.status_code == 200
    body = response.json()
    assert [message["is_bot"] for message in body["messages"]] == [False, True]
    assert body["assignment"]["support_user_id"] == "agent-1"
    assert body["rating"] is None


@pytest.mark.parametrize(
    "error, status_code",
    [
        (TicketNotFoundError("Ticket t-1 not found"), 404),
        (TicketPermissionError("Customers may only close their tickets"), 403),
        (AssignmentConflictError("Ticket is already assigned"), 409),
        (TicketStorageError("database unavailable"), 503),
    ],
)
def test_service_errors_map_to_status_codes(api, error, status_code):
    client, service, _, _ = api
    service.change_status = AsyncMock(side_effect=error)

    response = client.post("/tickets/t-1/status", json={"status": "solved"})

    assert response.status_code == status_code
    assert response.json()["detail"] == str(error)
    if status_code == 503:
        assert response.headers["retry-after"] == "5"


def test_post_message_reports_handoff(api):
    client, service, _, _ = api
    reply = _make_message("Have you tried restarting?", user_id="bot", is_bot=True)
    service.post_message = AsyncMock(
        return_value=MessagePostResult(
            message=_make_message("Still broken"),
            ticket=_make_ticket(),
            handoff=HandoffResult(action=HandoffAction.ASSISTANT_REPLIED, message=reply),
        )
    )

    response = client.post("/tickets/t-1/messages", json={"body": "Still broken"})

    assert response.status_code == 201
    handoff = response.json()["handoff"]
    assert handoff["action"] == "assistant_replied"
    assert handoff["reply"]["body"] == "Have you tried restarting?"


def test_staff_routes_reject_customers(api):
    client, service, _, _ = api

    assert client.post("/tickets/t-1/take-over").status_code == 403
    assert client.post("/tickets/t-1/priority", json={"priority": "urgent"}).status_code == 403
    assert client.delete("/tickets/t-1/assignment").status_code == 403
    service.take_over.assert_not_called()


def test_take_over_returns_announcement(api):
    client, service, state, _ = api
    state["session"] = AGENT
    assignment = TicketAssignment(
        id="a-1", ticket_id="t-1", support_user_id="agent-1", assigned_by="agent-1", created_at=NOW
    )
    announcement = _make_message("Peter has taken over this conversation.", user_id="bot", is_bot=True)
    service.take_over = AsyncMock(return_value=AssignmentOutcome(assignment=assignment, announcement=announcement))

    response = client.post("/tickets/t-1/take-over")

    assert response.status_code == 200
    assert response.json()["announcement"]["body"] == "Peter has taken over this conversation."


def test_release_returns_no_content(api):
    client, service, state, _ = api
    state["session"] = AGENT
    service.release = AsyncMock(return_value=False)

    response = client.delete("/tickets/t-1/assignment")

    assert response.status_code == 204


def test_rating_out_of_range_is_rejected(api):
    client, service, _, _ = api

    response = client.post("/tickets/t-1/rating", json={"rating": 6})

    assert response.status_code == 422
    service.rate_ticket.assert_not_called()


def test_rating_is_recorded(api):
    client, service, _, _ = api
    service.rate_ticket = AsyncMock(
        return_value=TicketRating(id="r-1", ticket_id="t-1", rating=5, feedback="Quick fix", created_at=NOW)
    )

    response = client.post("/tickets/t-1/rating", json={"rating": 5, "feedback": "Quick fix"})

    assert response.status_code == 201
    assert response.json()["rating"] == 5
    assert service.rate_ticket.await_args.kwargs == {"rating": 5, "feedback": "Quick fix"}


def test_ratings_listing_is_admin_only(api):
    client, service, state, _ = api
    summary = RatingSummary(
        rating=TicketRating(id="r-1", ticket_id="t-1", rating=4, feedback=None, created_at=NOW),
        ticket_title="Bot offline",
        ticket_priority=TicketPriority.HIGH,
        customer_nickname="Jana",
    )
    service.list_ratings = AsyncMock(return_value=[summary])

    assert client.get("/ratings").status_code == 403

    state["session"] = ADMIN
    response = client.get("/ratings")

    assert response.status_code == 200
    assert response.json()[0]["ticket_title"] == "Bot offline"
    assert response.json()[0]["customer_nickname"] == "Jana"


def test_close_inactive_route_reports_closed_tickets(api):
    client, _, state, app = api
    reaper = AsyncMock()
    reaper.run = AsyncMock(return_value=ReaperReport(closed_tickets=[ClosedTicket(id="t-9", title="Old")]))

    async def override_reaper():
        return reaper

    app.dependency_overrides[get_reaper] = override_reaper

    assert client.post("/maintenance/close-inactive").status_code == 403

    state["session"] = ADMIN
    response = client.post("/maintenance/close-inactive")

    assert response.status_code == 200
    assert response.json() == {"closed_count": 1, "closed_tickets": [{"id": "t-9", "title": "Old"}]}


def test_profile_update_only_writes_sent_fields(api):
    client, _, _, app = api
    profiles = AsyncMock()
    profiles.update_profile = AsyncMock(
        return_value=Profile(
            id="customer-1",
            email="jana@example.com",
            nickname="Jana",
            phone=None,
            avatar_url=None,
            is_support=False,
            is_admin=False,
            created_at=NOW,
            updated_at=NOW,
        )
    )

    async def override_profiles():
        return profiles

    app.dependency_overrides[get_profile_repository] = override_profiles

    response = client.patch("/profiles/me", json={"nickname": "Jana", "phone": None})

    assert response.status_code == 200
    assert response.json()["nickname"] == "Jana"
    profiles.update_profile.assert_awaited_once_with("customer-1", nickname="Jana", phone=None)


def test_missing_service_returns_unavailable():
    app = create_app()

    async def override_session():
        return CUSTOMER

    app.dependency_overrides[get_session_context] = override_session
    client = TestClient(app)

    response = client.get("/tickets")

    assert response.status_code == 503
