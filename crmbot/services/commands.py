from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
import logging
import re
from typing import Awaitable, Callable, Dict, Optional, Tuple

from sqlalchemy.orm import Session

from crmbot.core.crypto import mask_secret
from crmbot.core.errors import CrmError, ProviderError, SelfClientError, StorageError
from crmbot.schemas.token import TokenResult
from crmbot.services.connect import connect, parse_self_client
from crmbot.services.conversation import ConversationStore, Step
from crmbot.services.crm_client import ZohoCrmClient
from crmbot.services.telegram_client import TelegramClient
from crmbot.services.token_refresher import TokenRefresher
from crmbot.services.token_store import TokenStore
from crmbot.services.zoho_oauth import ZohoOAuthClient


logger = logging.getLogger(__name__)

NEW_LEAD_RE = re.compile(r"^/(?:newlead|leadcreation)_(\w+)_(\S+@\S+\.\S+)$", re.IGNORECASE)

RECONNECT_HINT = "Please use /connect to reconnect your Zoho CRM account."
SERVICE_ERROR_TEXT = "The service is temporarily unavailable (database error). Please try again in a few minutes."

HELP_TEXT = (
    "Available commands:\n"
    "/connect - link your Zoho CRM account\n"
    "/leads - show your 5 latest leads\n"
    "/newlead_Name_email - create a lead, e.g. /newlead_Alice_alice@example.com\n"
    "/status - connection and token status\n"
    "/debug - test the stored token against the CRM API\n"
    "/help - this message"
)

CONNECT_TEXT = (
    "Connect your Zoho CRM\n\n"
    "1. Open https://api-console.zoho.com/ and create a Self Client.\n"
    "2. Generate a code with scope ZohoCRM.modules.ALL,ZohoCRM.org.READ and a 10 minute duration.\n"
    "3. Download self_client.json and paste its full content here.\n\n"
    "Your chat ID: {chat_id}"
)


class Command(str, Enum):
    START = "start"
    HELP = "help"
    CONNECT = "connect"
    LEADS = "leads"
    NEW_LEAD = "newlead"
    STATUS = "status"
    DEBUG = "debug"
    SELF_CLIENT_JSON = "self_client_json"
    UNKNOWN = "unknown"


_SIMPLE_COMMANDS = {
    "/start": Command.START,
    "/help": Command.HELP,
    "/connect": Command.CONNECT,
    "/leads": Command.LEADS,
    "/status": Command.STATUS,
    "/debug": Command.DEBUG,
    "/testaccess": Command.DEBUG,
}


@dataclass
class ParsedCommand:
    command: Command
    text: str
    args: Tuple[str, ...] = ()


def parse_command(text: str, step: Step = Step.NONE) -> ParsedCommand:
    """Map an incoming message to a command; free text counts only while JSON is awaited."""
    stripped = (text or "").strip()
    if stripped.startswith("/"):
        head = stripped.split()[0]
        lowered = head.lower()
        if lowered.startswith(("/newlead", "/leadcreation")):
            match = NEW_LEAD_RE.match(head)
            return ParsedCommand(Command.NEW_LEAD, stripped, match.groups() if match else ())
        # "/leads@SomeBot" in group chats
        name = lowered.split("@", 1)[0]
        if name in _SIMPLE_COMMANDS:
            return ParsedCommand(_SIMPLE_COMMANDS[name], stripped)
        return ParsedCommand(Command.UNKNOWN, stripped)
    if step is Step.AWAITING_JSON:
        return ParsedCommand(Command.SELF_CLIENT_JSON, stripped)
    return ParsedCommand(Command.UNKNOWN, stripped)


@dataclass
class BotContext:
    telegram: TelegramClient
    oauth: ZohoOAuthClient
    crm: ZohoCrmClient
    refresher: TokenRefresher

    @property
    def session_factory(self) -> Callable[[], Session]:
        return self.refresher.session_factory


Handler = Callable[[BotContext, str, ParsedCommand], Awaitable[str]]


def format_time_left(expires_at: Optional[datetime], now: Optional[datetime] = None) -> str:
    if expires_at is None:
        return "unknown"
    now = now or datetime.now(timezone.utc)
    minutes = int((expires_at - now).total_seconds() // 60)
    if minutes >= 60:
        return f"{minutes // 60}h {minutes % 60}m"
    if minutes > 0:
        return f"{minutes}m"
    if minutes == 0:
        return "less than 1 minute"
    return f"expired {abs(minutes)}m ago"


def _reconnect_text(result: TokenResult) -> str:
    return f"Your Zoho CRM connection is not usable ({result.error}).\n{RECONNECT_HINT}"


def _crm_error_text(exc: CrmError) -> str:
    if exc.status_code == 401:
        return f"Zoho CRM rejected the access token.\n{RECONNECT_HINT}"
    if exc.status_code == 403:
        return "Access denied by Zoho CRM. Check your CRM permissions or use /connect to reconnect."
    if exc.status_code == 429:
        return "Zoho CRM rate limit exceeded. Please wait a moment and try again."
    return f"Zoho CRM request failed: {exc.message}"


async def handle_help(ctx: BotContext, chat_id: str, parsed: ParsedCommand) -> str:
    await ctx.telegram.send_message(chat_id, HELP_TEXT)
    return "help sent"


async def handle_connect(ctx: BotContext, chat_id: str, parsed: ParsedCommand) -> str:
    with ctx.session_factory() as db:
        ConversationStore(db).set_step(chat_id, Step.AWAITING_JSON)
    await ctx.telegram.send_message(chat_id, CONNECT_TEXT.format(chat_id=chat_id))
    return "connect instructions sent"


async def handle_self_client_json(ctx: BotContext, chat_id: str, parsed: ParsedCommand) -> str:
    try:
        self_client = parse_self_client(parsed.text)
    except SelfClientError as exc:
        if exc.missing:
            text = f"Missing required fields in JSON: {', '.join(exc.missing)}. The file must contain client_id, client_secret and code."
        else:
            text = "Invalid JSON format. Please paste the exact content of self_client.json."
        await ctx.telegram.send_message(chat_id, text)
        return "invalid self client"

    try:
        record = await connect(chat_id, self_client, ctx.oauth, ctx.session_factory)
    except ProviderError as exc:
        with ctx.session_factory() as db:
            ConversationStore(db).clear(chat_id)
        detail = exc.details.get("error") if isinstance(exc.details, dict) and exc.details.get("error") else exc.message
        await ctx.telegram.send_message(
            chat_id,
            f"Failed to connect to Zoho ({detail}).\nPlease try /connect again with a fresh authorization code.",
        )
        return "token exchange failed"

    with ctx.session_factory() as db:
        ConversationStore(db).clear(chat_id)
    await ctx.telegram.send_message(
        chat_id,
        "Connection successful! Your Zoho CRM is now linked.\n"
        f"Access token valid for {format_time_left(record.expires_at)}; it is refreshed automatically.",
    )
    return "connection completed"


async def handle_leads(ctx: BotContext, chat_id: str, parsed: ParsedCommand) -> str:
    token = await ctx.refresher.get_valid(chat_id)
    if not token.success:
        await ctx.telegram.send_message(chat_id, _reconnect_text(token))
        return "needs reconnect"
    try:
        leads = await ctx.crm.list_leads(token.access_token)
    except CrmError as exc:
        await ctx.telegram.send_message(chat_id, _crm_error_text(exc))
        return "crm error"

    if not leads:
        await ctx.telegram.send_message(chat_id, "No leads found in your CRM.")
        return "no leads"
    lines = ["Latest leads:"]
    for i, lead in enumerate(leads, start=1):
        name = f"{lead.get('First_Name') or ''} {lead.get('Last_Name') or ''}".strip() or "Unnamed Lead"
        lines.append(
            f"{i}. {name} | {lead.get('Phone') or '-'} | {lead.get('Email') or '-'} | {lead.get('Company') or '-'}"
        )
    await ctx.telegram.send_message(chat_id, "\n".join(lines))
    return f"{len(leads)} leads sent"


async def handle_new_lead(ctx: BotContext, chat_id: str, parsed: ParsedCommand) -> str:
    if not parsed.args:
        await ctx.telegram.send_message(chat_id, "Invalid command format. Use /newlead_Name_email")
        return "invalid lead command"
    name, email = parsed.args
    token = await ctx.refresher.get_valid(chat_id)
    if not token.success:
        await ctx.telegram.send_message(chat_id, _reconnect_text(token))
        return "needs reconnect"
    try:
        created = await ctx.crm.create_lead(token.access_token, name, email)
    except CrmError as exc:
        await ctx.telegram.send_message(chat_id, _crm_error_text(exc))
        return "crm error"
    lead_id = (created.get("details") or {}).get("id", "-")
    await ctx.telegram.send_message(chat_id, f"Lead created.\nName: {name}\nEmail: {email}\nID: {lead_id}")
    return "lead created"


async def handle_status(ctx: BotContext, chat_id: str, parsed: ParsedCommand) -> str:
    with ctx.session_factory() as db:
        store = TokenStore(db, ctx.refresher.expiry_margin)
        record = store.get(chat_id)
    if record is None:
        await ctx.telegram.send_message(chat_id, "Not connected. Use /connect to link your Zoho CRM.")
        return "not connected"
    refresh_ready = all([record.refresh_token, record.client_id, record.client_secret])
    await ctx.telegram.send_message(
        chat_id,
        "Zoho CRM connected.\n"
        f"Access token: {'expiring, will refresh on next use' if ctx.refresher.needs_refresh(record) else 'valid'}\n"
        f"Time left: {format_time_left(record.expires_at)}\n"
        f"Automatic refresh: {'enabled' if refresh_ready else 'unavailable, please /connect again'}\n"
        f"Last updated: {record.updated_at.isoformat(timespec='seconds') if record.updated_at else '-'}",
    )
    return "status sent"


async def handle_debug(ctx: BotContext, chat_id: str, parsed: ParsedCommand) -> str:
    token = await ctx.refresher.get_valid(chat_id)
    if not token.success:
        await ctx.telegram.send_message(chat_id, _reconnect_text(token))
        return "needs reconnect"
    lines = [
        f"Chat ID: {chat_id}",
        f"Access token: {mask_secret(token.access_token)}",
        f"Refreshed now: {'yes' if token.was_refreshed else 'no'}",
        f"Time left: {format_time_left(token.expires_at)}",
    ]
    try:
        org = await ctx.crm.get_org(token.access_token)
        lines.append(f"API test: ok, organization {org.get('company_name') or 'N/A'}")
    except CrmError as exc:
        lines.append(f"API test: failed ({exc.status_code or 'no status'}) {exc.message}")
    await ctx.telegram.send_message(chat_id, "\n".join(lines))
    return "debug sent"


async def handle_unknown(ctx: BotContext, chat_id: str, parsed: ParsedCommand) -> str:
    await ctx.telegram.send_message(chat_id, f'Unknown command: "{parsed.text}"\n\n{HELP_TEXT}')
    return "unknown command"


HANDLERS: Dict[Command, Handler] = {
    Command.START: handle_help,
    Command.HELP: handle_help,
    Command.CONNECT: handle_connect,
    Command.SELF_CLIENT_JSON: handle_self_client_json,
    Command.LEADS: handle_leads,
    Command.NEW_LEAD: handle_new_lead,
    Command.STATUS: handle_status,
    Command.DEBUG: handle_debug,
    Command.UNKNOWN: handle_unknown,
}


async def dispatch(ctx: BotContext, chat_id: int | str, text: str) -> str:
    chat = str(chat_id)
    try:
        with ctx.session_factory() as db:
            step = ConversationStore(db).get_step(chat)
        parsed = parse_command(text, step)
        logger.info("bot.dispatch chat=%s command=%s", chat, parsed.command.value)
        return await HANDLERS[parsed.command](ctx, chat, parsed)
    except StorageError as exc:
        logger.error("bot.dispatch chat=%s storage_error=%s", chat, exc)
        await ctx.telegram.send_message(chat, SERVICE_ERROR_TEXT)
        return "storage error"
