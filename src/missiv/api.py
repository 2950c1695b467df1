"""Summary: FastAPI application for Missiv.

Importance: Exposes HTTP endpoints for desks, conversations, notifications, and contacts.
Alternatives: Use a CLI-only workflow or a different web framework.
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from missiv.app import AppServices, build_services
from missiv.config import AppConfig
from missiv.errors import (
    AlreadyExists,
    InvalidState,
    MissivError,
    NotFound,
    PreconditionFailed,
    Unavailable,
)
from missiv.identity import format_desk_id
from missiv.models import Account, BasketState, Contact, Conversation, Desk, Miv, Notification
from missiv.projection import ConversationSummary, ProjectedMiv


logger = logging.getLogger(__name__)

ERROR_STATUS = (
    (NotFound, 404),
    (AlreadyExists, 409),
    (InvalidState, 400),
    (PreconditionFailed, 412),
    (Unavailable, 503),
)


class RegisterRequest(BaseModel):
    """Summary: Request payload for account registration.

    Importance: Collects credentials and recovery answers in one call.
    Alternatives: Register first and add security answers later.
    """

    username: str
    password: str
    display_name: str = ""
    email: str = ""
    security_answers: list[str] = Field(default_factory=list)


class LoginRequest(BaseModel):
    """Summary: Request payload for login."""

    username: str
    password: str


class RecoverRequest(BaseModel):
    """Summary: Request payload for password recovery."""

    username: str
    security_answers: list[str]
    new_password: str


class DeskCreateRequest(BaseModel):
    """Summary: Request payload for desk creation.

    Importance: Lets an account open additional desks.
    Alternatives: Allow exactly one desk per account.
    """

    account_id: str
    name: str


class DeskUpdateRequest(BaseModel):
    """Summary: Request payload for desk edits; omitted fields stay unchanged."""

    name: str | None = None
    auto_indent: bool | None = None
    font_family: str | None = None
    font_size: str | None = None
    default_salutation: str | None = None
    default_closure: str | None = None


class DeskSwitchRequest(BaseModel):
    """Summary: Request payload for switching the active desk."""

    account_id: str
    desk_id: str


class ConversationCreateRequest(BaseModel):
    """Summary: Request payload for opening a conversation.

    Importance: The first miv travels with the conversation so both appear together.
    Alternatives: Create an empty conversation, then post the first miv.
    """

    to_desk: str
    subject: str
    body: str
    is_encrypted: bool = False


class ReplyRequest(BaseModel):
    """Summary: Request payload for replying in a conversation."""

    body: str
    is_ack: bool = False
    is_encrypted: bool = False


class ContactRequest(BaseModel):
    """Summary: Request payload for contact creation and edits."""

    name: str = ""
    desk_id_ref: str = ""
    first_name: str = ""
    last_name: str = ""
    greeting_name: str = ""
    notes: str = ""


def create_app(config: AppConfig, services: AppServices | None = None) -> FastAPI:
    """Summary: Create a FastAPI app wired to Missiv services.

    Importance: Ensures the API layer shares the same configuration and storage.
    Alternatives: Instantiate services globally outside the factory.
    """

    if not logging.getLogger().handlers:
        logging.basicConfig(
            level=config.log_level, format="%(levelname)s %(name)s: %(message)s"
        )
    app = FastAPI(title="Missiv API", version="0.1.0")
    services = services or build_services(config)

    @app.exception_handler(MissivError)
    async def handle_missiv_error(request: Request, exc: MissivError) -> JSONResponse:
        """Summary: Map engine error kinds onto HTTP statuses.

        Importance: Services raise typed errors without knowing about HTTP.
        Alternatives: Catch errors in every route handler.
        """

        status_code = next(
            (status for error_type, status in ERROR_STATUS if isinstance(exc, error_type)), 500
        )
        if status_code >= 500:
            logger.warning("%s %s failed: %s", request.method, request.url.path, exc.message)
        return JSONResponse(
            status_code=status_code,
            content={"error": exc.message, "code": exc.code, "details": exc.details},
        )

    def require_api_key(x_api_key: str | None = Header(default=None)) -> None:
        """Summary: Enforce API key authentication when configured.

        Importance: Adds a minimal security layer for local and private deployments.
        Alternatives: Use OAuth or session-based authentication.
        """

        if not config.api_key:
            return
        if x_api_key != config.api_key:
            raise HTTPException(status_code=401, detail="Invalid API key")

    guarded = [Depends(require_api_key)]

    @app.get("/health")
    def health() -> dict[str, str]:
        """Summary: Health check endpoint.

        Importance: Supports uptime checks in local and cloud deployments.
        Alternatives: Use a metrics endpoint only.
        """

        return {"status": "ok"}

    @app.post("/api/accounts/register", status_code=201, dependencies=guarded)
    def register(payload: RegisterRequest) -> dict[str, Any]:
        """Summary: Register an account and provision its primary desk."""

        account, desk = services.accounts.register(
            payload.username,
            payload.password,
            payload.display_name,
            payload.email,
            payload.security_answers,
        )
        return {"account": _account_payload(account), "desk": _desk_payload(desk)}

    @app.post("/api/accounts/login", dependencies=guarded)
    def login(payload: LoginRequest) -> dict[str, Any]:
        """Summary: Verify credentials and return the account with its desks."""

        account = services.accounts.login(payload.username, payload.password)
        desks = services.desks.list_desks(account.id)
        return {
            "account": _account_payload(account),
            "desks": [_desk_payload(desk) for desk in desks],
        }

    @app.post("/api/accounts/recover", dependencies=guarded)
    def recover(payload: RecoverRequest) -> dict[str, Any]:
        """Summary: Reset a password using the security answers."""

        account = services.accounts.recover_password(
            payload.username, payload.security_answers, payload.new_password
        )
        return {"account": _account_payload(account)}

    @app.get("/api/desks", dependencies=guarded)
    def list_desks(account_id: str) -> list[dict[str, Any]]:
        return [_desk_payload(desk) for desk in services.desks.list_desks(account_id)]

    @app.post("/api/desks", status_code=201, dependencies=guarded)
    def create_desk(payload: DeskCreateRequest) -> dict[str, Any]:
        """Summary: Open an additional desk for an account."""

        return _desk_payload(services.desks.create_desk(payload.account_id, payload.name))

    @app.put("/api/desks/{desk_id}", dependencies=guarded)
    def update_desk(desk_id: str, payload: DeskUpdateRequest) -> dict[str, Any]:
        """Summary: Rename a desk or change its preferences."""

        preferences = {
            key: value
            for key, value in (
                ("auto_indent", payload.auto_indent),
                ("font_family", payload.font_family),
                ("font_size", payload.font_size),
                ("default_salutation", payload.default_salutation),
                ("default_closure", payload.default_closure),
            )
            if value is not None
        }
        desk = services.desks.update_desk(desk_id, name=payload.name, preferences=preferences)
        return _desk_payload(desk)

    @app.post("/api/desks/switch", dependencies=guarded)
    def switch_desk(payload: DeskSwitchRequest) -> dict[str, Any]:
        account = services.desks.switch_desk(payload.account_id, payload.desk_id)
        return {"account": _account_payload(account)}

    @app.get("/api/conversations", dependencies=guarded)
    def list_conversations(desk_id: str) -> list[dict[str, Any]]:
        """Summary: List a desk's conversations, most recent activity first.

        Importance: Powers the conversation list with unread badges.
        Alternatives: Return conversations without latest miv details.
        """

        return [
            _summary_payload(summary)
            for summary in services.conversations.list_conversations(desk_id)
        ]

    @app.post("/api/conversations", status_code=201, dependencies=guarded)
    def create_conversation(desk_id: str, payload: ConversationCreateRequest) -> dict[str, Any]:
        """Summary: Open a conversation from a desk to another desk."""

        conversation, miv = services.conversations.create_conversation(
            desk_id, payload.to_desk, payload.subject, payload.body, payload.is_encrypted
        )
        return {
            "conversation": _conversation_payload(conversation),
            "miv": _miv_payload(miv, "SENT"),
        }

    @app.get("/api/conversations/{conversation_id}", dependencies=guarded)
    def get_conversation(conversation_id: str, desk_id: str) -> dict[str, Any]:
        """Summary: Fetch a conversation projected for the viewing desk.

        Importance: Each miv carries the state the viewing desk sees it in.
        Alternatives: Return a single state per miv for every viewer.
        """

        view = services.conversations.get_conversation(conversation_id, desk_id)
        return {
            "conversation": _conversation_payload(view.conversation),
            "mivs": [_projected_payload(projected) for projected in view.mivs],
        }

    @app.post("/api/conversations/{conversation_id}/reply", status_code=201, dependencies=guarded)
    def reply(conversation_id: str, desk_id: str, payload: ReplyRequest) -> dict[str, Any]:
        miv = services.conversations.reply(
            conversation_id, desk_id, payload.body, payload.is_ack, payload.is_encrypted
        )
        return _miv_payload(miv, "SENT")

    @app.post("/api/conversations/{conversation_id}/archive", dependencies=guarded)
    def archive(conversation_id: str) -> dict[str, Any]:
        return _conversation_payload(services.conversations.archive(conversation_id))

    @app.post("/api/conversations/{conversation_id}/unarchive", dependencies=guarded)
    def unarchive(conversation_id: str) -> dict[str, Any]:
        return _conversation_payload(services.conversations.unarchive(conversation_id))

    @app.post("/api/conversations/{conversation_id}/read", dependencies=guarded)
    def mark_conversation_read(conversation_id: str, desk_id: str) -> dict[str, Any]:
        count = services.conversations.mark_conversation_read(conversation_id, desk_id)
        return {"marked_read": count}

    @app.get("/api/baskets/{basket}", dependencies=guarded)
    def list_basket(basket: str, desk_id: str) -> dict[str, Any]:
        """Summary: List one basket of a desk.

        Importance: IN, PENDING, and SENT list mivs; ARCHIVED lists conversations.
        Alternatives: Offer one endpoint per basket.
        """

        try:
            state = BasketState(basket.upper())
        except ValueError:
            raise HTTPException(status_code=400, detail=f"Unknown basket: {basket}") from None
        view = services.conversations.list_basket(desk_id, state)
        return {
            "basket": view.basket.value,
            "mivs": [_projected_payload(projected) for projected in view.mivs],
            "conversations": [_summary_payload(summary) for summary in view.conversations],
        }

    @app.post("/api/mivs/{miv_id}/read", dependencies=guarded)
    def mark_miv_read(miv_id: str, desk_id: str) -> dict[str, Any]:
        return _miv_payload(services.conversations.mark_read(miv_id, desk_id))

    @app.post("/api/mivs/{miv_id}/forget", dependencies=guarded)
    def forget_miv(miv_id: str, desk_id: str) -> dict[str, Any]:
        return _miv_payload(services.conversations.forget(miv_id, desk_id))

    @app.get("/api/notifications", dependencies=guarded)
    def list_notifications(desk_id: str, unread_only: bool = False) -> dict[str, Any]:
        """Summary: List a desk's notifications with the unread count."""

        notifications = services.notifications.list_notifications(desk_id, unread_only)
        return {
            "notifications": [_notification_payload(item) for item in notifications],
            "unread_count": services.notifications.unread_count(desk_id),
        }

    @app.post("/api/notifications/{notification_id}/read", dependencies=guarded)
    def mark_notification_read(notification_id: str) -> dict[str, Any]:
        return _notification_payload(services.notifications.mark_read(notification_id))

    @app.get("/api/desks/{desk_id}/contacts", dependencies=guarded)
    def list_contacts(desk_id: str) -> list[dict[str, Any]]:
        return [_contact_payload(contact) for contact in services.contacts.list_contacts(desk_id)]

    @app.post("/api/desks/{desk_id}/contacts", status_code=201, dependencies=guarded)
    def create_contact(desk_id: str, payload: ContactRequest) -> dict[str, Any]:
        """Summary: Add an address-book entry to a desk."""

        contact = services.contacts.create_contact(
            desk_id,
            payload.name,
            payload.desk_id_ref,
            first_name=payload.first_name,
            last_name=payload.last_name,
            greeting_name=payload.greeting_name,
            notes=payload.notes,
        )
        return _contact_payload(contact)

    @app.get("/api/contacts/{contact_id}", dependencies=guarded)
    def get_contact(contact_id: str) -> dict[str, Any]:
        return _contact_payload(services.contacts.get_contact(contact_id))

    @app.put("/api/contacts/{contact_id}", dependencies=guarded)
    def update_contact(contact_id: str, payload: ContactRequest) -> dict[str, Any]:
        contact = services.contacts.update_contact(
            contact_id,
            name=payload.name,
            desk_id_ref=payload.desk_id_ref,
            first_name=payload.first_name,
            last_name=payload.last_name,
            greeting_name=payload.greeting_name,
            notes=payload.notes,
        )
        return _contact_payload(contact)

    @app.delete("/api/contacts/{contact_id}", dependencies=guarded)
    def delete_contact(contact_id: str) -> dict[str, str]:
        services.contacts.delete_contact(contact_id)
        return {"status": "deleted"}

    return app


def _account_payload(account: Account) -> dict[str, Any]:
    # Password and security answer hashes never leave the server.
    return {
        "id": account.id,
        "username": account.username,
        "display_name": account.display_name,
        "email": account.email,
        "desks": list(account.desks),
        "active_desk": account.active_desk,
        "created_at": account.created_at,
        "updated_at": account.updated_at,
    }


def _desk_payload(desk: Desk) -> dict[str, Any]:
    return {
        "id": desk.id,
        "display_id": format_desk_id(desk.id),
        "account_id": desk.account_id,
        "name": desk.name,
        "public_key": desk.public_key,
        "preferences": {
            "auto_indent": desk.preferences.auto_indent,
            "font_family": desk.preferences.font_family,
            "font_size": desk.preferences.font_size,
            "default_salutation": desk.preferences.default_salutation,
            "default_closure": desk.preferences.default_closure,
        },
        "created_at": desk.created_at,
        "updated_at": desk.updated_at,
    }


def _conversation_payload(conversation: Conversation) -> dict[str, Any]:
    return {
        "id": conversation.id,
        "subject": conversation.subject,
        "desk_id": conversation.desk_id,
        "participants": list(conversation.participants),
        "miv_count": conversation.miv_count,
        "is_archived": conversation.is_archived,
        "created_at": conversation.created_at,
        "updated_at": conversation.updated_at,
    }


def _miv_payload(miv: Miv, state: str | None = None) -> dict[str, Any]:
    payload = {
        "id": miv.id,
        "conversation_id": miv.conversation_id,
        "seq_no": miv.seq_no,
        "from": miv.from_desk,
        "to": miv.to_desk,
        "subject": miv.subject,
        "body": miv.body,
        "is_encrypted": miv.is_encrypted,
        "is_ack": miv.is_ack,
        "is_forgotten": miv.is_forgotten,
        "created_at": miv.created_at,
        "sent_at": miv.sent_at,
        "received_at": miv.received_at,
        "read_at": miv.read_at,
    }
    if state is not None:
        payload["state"] = state
    if miv.legacy_state is not None:
        payload["legacy_state"] = miv.legacy_state
    return payload


def _projected_payload(projected: ProjectedMiv) -> dict[str, Any]:
    return _miv_payload(projected.miv, projected.state.value)


def _summary_payload(summary: ConversationSummary) -> dict[str, Any]:
    payload = _conversation_payload(summary.conversation)
    payload["latest_miv"] = _miv_payload(summary.latest_miv) if summary.latest_miv else None
    payload["unread_count"] = summary.unread_count
    return payload


def _notification_payload(notification: Notification) -> dict[str, Any]:
    return {
        "id": notification.id,
        "desk_id": notification.desk_id,
        "type": notification.type.value,
        "miv_id": notification.miv_id,
        "conversation_id": notification.conversation_id,
        "message": notification.message,
        "read": notification.read,
        "created_at": notification.created_at,
        "read_at": notification.read_at,
    }


def _contact_payload(contact: Contact) -> dict[str, Any]:
    return {
        "id": contact.id,
        "desk_id": contact.desk_id,
        "name": contact.name,
        "first_name": contact.first_name,
        "last_name": contact.last_name,
        "greeting_name": contact.greeting_name,
        "desk_id_ref": contact.desk_id_ref,
        "notes": contact.notes,
        "created_at": contact.created_at,
        "updated_at": contact.updated_at,
    }
