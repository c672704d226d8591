"""
Per-chat conversation state machine.

Every inbound message is classified into an Intent, access-checked, then
looked up in TRANSITIONS by (state, intent). The handler returns the replies
and the next state; the state only changes when the handler succeeds.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from config import normalize_handle
from dates import DateRange
from errors import (
    AccessDenied, AuthError, NotFoundError, PersistenceError,
    RemoteAPIError, ReportBotError, ValidationError,
)
from formatting import (
    format_handles, format_olap_table, format_server_list,
    format_shift_message, format_total_message, md,
)

logger = logging.getLogger(__name__)


class State(Enum):
    IDLE = 'idle'
    AWAITING_MENU_CHOICE = 'menu'
    AWAITING_SERVER_CHOICE = 'server_choice'
    AWAITING_OLAP_CATEGORY_CHOICE = 'olap_category'
    AWAITING_NEW_USER_NAME = 'new_user'
    AWAITING_USER_TO_DELETE = 'delete_user'
    AWAITING_ADMIN_MENU_CHOICE = 'admin_menu'
    AWAITING_REPORT_MENU_CHOICE = 'report_menu'


class Intent(Enum):
    START = 'start'
    HELP = 'help'
    REPORTS = 'reports'
    SWITCH_SERVER = 'switch'
    LIST_SERVERS = 'list'
    ADMIN = 'admin'
    TODAY = 'today'
    YESTERDAY = 'yesterday'
    WEEK = 'week'
    MONTH = 'month'
    DAYS = 'days'
    OLAP = 'olap'
    ADD_USER = 'adduser'
    DELETE_USER = 'deleteuser'
    LIST_USERS = 'listusers'
    LIST_ADMINS = 'listadmins'
    BACK = 'back'
    TEXT = 'text'


# Wildcard state for transitions valid from anywhere
ANY = None

DENIED_MESSAGE = "You are not in the user list."
NOT_ADMIN_MESSAGE = "You are not in the admin list."
CHOOSE_OPTION = "Choose an option"

MAIN_MENU = [["Reports", "Switch server"], ["List servers", "Administration"]]
REPORT_MENU = [["Today", "Yesterday"], ["Last 7 days", "This month"], ["OLAP report"], ["Back"]]
ADMIN_MENU = [["Add user", "Delete user"], ["List users", "List admins"], ["Back"]]

MENU_BUTTONS = {
    State.AWAITING_MENU_CHOICE: {
        "Reports": Intent.REPORTS,
        "Switch server": Intent.SWITCH_SERVER,
        "List servers": Intent.LIST_SERVERS,
        "Administration": Intent.ADMIN,
    },
    State.AWAITING_REPORT_MENU_CHOICE: {
        "Today": Intent.TODAY,
        "Yesterday": Intent.YESTERDAY,
        "Last 7 days": Intent.WEEK,
        "This month": Intent.MONTH,
        "OLAP report": Intent.OLAP,
        "Back": Intent.BACK,
    },
    State.AWAITING_ADMIN_MENU_CHOICE: {
        "Add user": Intent.ADD_USER,
        "Delete user": Intent.DELETE_USER,
        "List users": Intent.LIST_USERS,
        "List admins": Intent.LIST_ADMINS,
        "Back": Intent.BACK,
    },
}

# States whose next message is free text (an alias, a category, a handle)
FREE_TEXT_STATES = {
    State.AWAITING_SERVER_CHOICE,
    State.AWAITING_OLAP_CATEGORY_CHOICE,
    State.AWAITING_NEW_USER_NAME,
    State.AWAITING_USER_TO_DELETE,
}

ADMIN_INTENTS = {Intent.ADMIN, Intent.ADD_USER, Intent.DELETE_USER, Intent.LIST_USERS, Intent.LIST_ADMINS}
ADMIN_STATES = {State.AWAITING_ADMIN_MENU_CHOICE, State.AWAITING_NEW_USER_NAME, State.AWAITING_USER_TO_DELETE}

# (command, intent, description) - also registered with the chat transport
BOT_COMMANDS = [
    ("start", Intent.START, "Start the bot"),
    ("help", Intent.HELP, "Show the command list"),
    ("today", Intent.TODAY, "Current shift revenue"),
    ("yesterday", Intent.YESTERDAY, "Previous shift revenue"),
    ("week", Intent.WEEK, "Revenue for the last 7 days"),
    ("month", Intent.MONTH, "Revenue for this month"),
    ("days", Intent.DAYS, "Revenue for the last N days"),
    ("olap", Intent.OLAP, "OLAP sales report"),
    ("switch", Intent.SWITCH_SERVER, "Switch to another server"),
    ("list", Intent.LIST_SERVERS, "List available servers"),
    ("adduser", Intent.ADD_USER, "Add a user"),
    ("deleteuser", Intent.DELETE_USER, "Delete a user"),
    ("listusers", Intent.LIST_USERS, "List users"),
    ("listadmins", Intent.LIST_ADMINS, "List admins"),
]
COMMANDS = {f"/{name}": intent for name, intent, _ in BOT_COMMANDS}


def classify(state: State, text: str):
    """Map raw input to (intent, argument) for the given state.

    Slash commands are recognised in every state. Button labels only count
    in the menu that shows them. Returns (None, text) for anything else.
    """
    text = (text or '').strip()
    if text.startswith('/'):
        command, _, arg = text.partition(' ')
        # /today@SomeBot -> /today
        command = command.split('@', 1)[0].lower()
        return COMMANDS.get(command), arg.strip()

    buttons = MENU_BUTTONS.get(state)
    if buttons and text in buttons:
        return buttons[text], ''
    if state in FREE_TEXT_STATES:
        return Intent.TEXT, text
    return None, text


def chunk(options, size=2):
    """Lay buttons out `size` per row."""
    options = list(options)
    return [options[i:i + size] for i in range(0, len(options), size)]


@dataclass
class Reply:
    """One outbound message: text, whether it is MarkdownV2, optional keyboard rows."""
    text: str
    markdown: bool = False
    keyboard: Optional[list] = None


@dataclass
class Transition:
    replies: list
    state: State


@dataclass
class ChatSession:
    state: State = State.IDLE
    olap_groups: dict = field(default_factory=dict)
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)


async def _run_sync(func, *args):
    """Run a synchronous function in a thread executor."""
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, func, *args)


class ConversationEngine:
    """Routes chat input through the role-gated menus.

    Dependencies are passed in explicitly: the server registry and user
    directory are shared between chats, the session manager caches keys,
    the two services do the remote calls.
    """

    def __init__(self, credentials, registry, users, sessions, shift_service, olap_service):
        self.credentials = credentials
        self.registry = registry
        self.users = users
        self.sessions = sessions
        self.shift_service = shift_service
        self.olap_service = olap_service
        self._chats = {}

        self.transitions = {
            (ANY, Intent.START): self._main_menu,
            (ANY, Intent.HELP): self._help,
            (ANY, Intent.BACK): self._main_menu,

            (State.AWAITING_MENU_CHOICE, Intent.REPORTS): self._report_menu,
            (State.AWAITING_MENU_CHOICE, Intent.SWITCH_SERVER): self._server_menu,
            (State.AWAITING_MENU_CHOICE, Intent.LIST_SERVERS): self._list_servers,
            (State.AWAITING_MENU_CHOICE, Intent.ADMIN): self._admin_menu,

            (State.AWAITING_REPORT_MENU_CHOICE, Intent.TODAY): self._today,
            (State.AWAITING_REPORT_MENU_CHOICE, Intent.YESTERDAY): self._yesterday,
            (State.AWAITING_REPORT_MENU_CHOICE, Intent.WEEK): self._week,
            (State.AWAITING_REPORT_MENU_CHOICE, Intent.MONTH): self._month,
            (State.AWAITING_REPORT_MENU_CHOICE, Intent.OLAP): self._olap,

            (State.AWAITING_OLAP_CATEGORY_CHOICE, Intent.TEXT): self._show_category,
            (State.AWAITING_SERVER_CHOICE, Intent.TEXT): self._switch_server,

            (State.AWAITING_ADMIN_MENU_CHOICE, Intent.ADD_USER): self._ask_new_user,
            (State.AWAITING_ADMIN_MENU_CHOICE, Intent.DELETE_USER): self._ask_user_to_delete,
            (State.AWAITING_ADMIN_MENU_CHOICE, Intent.LIST_USERS): self._list_users,
            (State.AWAITING_ADMIN_MENU_CHOICE, Intent.LIST_ADMINS): self._list_admins,
            (State.AWAITING_NEW_USER_NAME, Intent.TEXT): self._add_user,
            (State.AWAITING_USER_TO_DELETE, Intent.TEXT): self._delete_user,

            # Slash command shortcuts, valid from any state
            (ANY, Intent.TODAY): self._today,
            (ANY, Intent.YESTERDAY): self._yesterday,
            (ANY, Intent.WEEK): self._week,
            (ANY, Intent.MONTH): self._month,
            (ANY, Intent.DAYS): self._days,
            (ANY, Intent.OLAP): self._olap,
            (ANY, Intent.SWITCH_SERVER): self._server_menu,
            (ANY, Intent.LIST_SERVERS): self._list_servers,
            (ANY, Intent.ADD_USER): self._ask_new_user,
            (ANY, Intent.DELETE_USER): self._ask_user_to_delete,
            (ANY, Intent.LIST_USERS): self._list_users,
            (ANY, Intent.LIST_ADMINS): self._list_admins,
        }

    # ------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------

    def _session(self, chat_id) -> ChatSession:
        return self._chats.setdefault(chat_id, ChatSession())

    def state_of(self, chat_id) -> State:
        return self._session(chat_id).state

    def olap_cache(self, chat_id) -> dict:
        return self._session(chat_id).olap_groups

    def _lookup(self, state, intent):
        if intent is None:
            return None
        return self.transitions.get((state, intent)) or self.transitions.get((ANY, intent))

    async def handle(self, chat_id, username, text) -> list:
        """Process one inbound message and return the replies to send."""
        handle = normalize_handle(username)
        session = self._session(chat_id)

        async with session.lock:
            intent, arg = classify(session.state, text)

            if intent is Intent.HELP:
                return (await self._help(session, handle, arg)).replies

            try:
                await self._check_access(handle)
            except AccessDenied:
                logger.warning(f"Access denied for @{handle or '?'} in chat {chat_id}")
                return [Reply(DENIED_MESSAGE)]

            logger.info(f"@{handle}: {text}")

            needs_admin = intent in ADMIN_INTENTS or (
                session.state in ADMIN_STATES and intent is Intent.TEXT)
            if needs_admin and not self.users.is_admin(handle):
                menu = await self._main_menu(session, handle, '')
                session.state = menu.state
                return [Reply(NOT_ADMIN_MESSAGE)] + menu.replies

            action = self._lookup(session.state, intent)
            if action is None:
                # Unrecognised input falls back to the main menu
                action = self._main_menu

            try:
                transition = await action(session, handle, arg)
            except ReportBotError as e:
                return await self._error_replies(session, e)

            session.state = transition.state
            return transition.replies

    async def _check_access(self, handle):
        if not handle or not await self.users.is_allowed(handle):
            raise AccessDenied(handle)

    async def _error_replies(self, session, error):
        """Notice for a failed action. The chat keeps its state."""
        if isinstance(error, AuthError):
            logger.error(f"Authentication failed: {error}")
            text = "Service unavailable: could not sign in to the server. Try again later."
        elif isinstance(error, RemoteAPIError):
            logger.error(f"Remote call failed: {error}")
            text = "Failed to fetch data from the server. Try again."
        elif isinstance(error, PersistenceError):
            logger.error(f"Persisting user list failed: {error}")
            text = "Could not save the user list. Nothing was changed."
        elif isinstance(error, (NotFoundError, ValidationError)):
            text = str(error)
        else:
            logger.exception(f"Unexpected bot error: {error}")
            text = "Something went wrong. Try again."
        return [Reply(text, keyboard=await self._keyboard_for(session))]

    async def _keyboard_for(self, session):
        """Keyboard matching the chat's current state, for re-prompts."""
        state = session.state
        if state is State.AWAITING_MENU_CHOICE:
            return MAIN_MENU
        if state is State.AWAITING_REPORT_MENU_CHOICE:
            return REPORT_MENU
        if state is State.AWAITING_ADMIN_MENU_CHOICE:
            return ADMIN_MENU
        if state is State.AWAITING_SERVER_CHOICE:
            return chunk(await self.registry.aliases())
        if state is State.AWAITING_OLAP_CATEGORY_CHOICE:
            return chunk(session.olap_groups)
        if state is State.AWAITING_USER_TO_DELETE:
            return chunk(await self.users.accounts())
        return None

    # ------------------------------------------------------------
    # Menus
    # ------------------------------------------------------------

    async def _main_menu(self, session, handle, arg):
        return Transition([Reply(CHOOSE_OPTION, keyboard=MAIN_MENU)], State.AWAITING_MENU_CHOICE)

    async def _then_main_menu(self, session, handle, replies):
        menu = await self._main_menu(session, handle, '')
        return Transition(replies + menu.replies, menu.state)

    async def _help(self, session, handle, arg):
        lines = ["Supported commands:"]
        lines += [f"/{name} - {description}" for name, _, description in BOT_COMMANDS]
        return Transition([Reply("\n".join(lines))], session.state)

    async def _report_menu(self, session, handle, arg):
        return Transition([Reply(CHOOSE_OPTION, keyboard=REPORT_MENU)], State.AWAITING_REPORT_MENU_CHOICE)

    async def _admin_menu(self, session, handle, arg):
        return Transition([Reply(CHOOSE_OPTION, keyboard=ADMIN_MENU)], State.AWAITING_ADMIN_MENU_CHOICE)

    async def _server_menu(self, session, handle, arg):
        alias, _ = await self.registry.current()
        aliases = await self.registry.aliases()
        reply = Reply(f"Current server: *{md(alias)}*", markdown=True, keyboard=chunk(aliases))
        return Transition([reply], State.AWAITING_SERVER_CHOICE)

    async def _list_servers(self, session, handle, arg):
        servers, current = await self.registry.snapshot()
        reply = Reply(format_server_list(servers, current), markdown=True)
        return await self._then_main_menu(session, handle, [reply])

    async def _switch_server(self, session, handle, alias):
        try:
            url = await self.registry.switch(alias)
        except NotFoundError as e:
            return await self._then_main_menu(session, handle, [Reply(str(e))])
        return await self._then_main_menu(session, handle, [Reply(f"Current server is now '{alias}' -> {url}")])

    # ------------------------------------------------------------
    # Reports
    # ------------------------------------------------------------

    async def _call_server(self, call):
        """Run `call(token, server_url)` against the current server.

        The registry lock is released before any network traffic. A key the
        server rejects is dropped so the next attempt signs in again.

        Returns:
            (alias, result)
        """
        alias, server_url = await self.registry.current()

        def run():
            token = self.sessions.acquire_token(self.credentials, server_url)
            try:
                return call(token, server_url)
            except AuthError:
                self.sessions.invalidate(server_url)
                raise

        return alias, await _run_sync(run)

    async def _shift_report(self, session, handle, offset, title):
        alias, shifts = await self._call_server(
            lambda token, url: self.shift_service.list_shifts(token, url, DateRange.week()))
        shift = self.shift_service.latest_shift(shifts, offset)
        reply = Reply(format_shift_message(alias, shift, title), markdown=True)
        return await self._then_main_menu(session, handle, [reply])

    async def _period_total(self, session, handle, date_range, label):
        alias, shifts = await self._call_server(
            lambda token, url: self.shift_service.list_shifts(token, url, date_range))
        total = self.shift_service.sum_shifts(shifts)
        reply = Reply(format_total_message(alias, label, total), markdown=True)
        return await self._then_main_menu(session, handle, [reply])

    async def _today(self, session, handle, arg):
        return await self._shift_report(session, handle, 0, "Current shift")

    async def _yesterday(self, session, handle, arg):
        return await self._shift_report(session, handle, 1, "Previous shift")

    async def _week(self, session, handle, arg):
        return await self._period_total(session, handle, DateRange.week(), "the last 7 days")

    async def _month(self, session, handle, arg):
        return await self._period_total(session, handle, DateRange.this_month(), "this month")

    async def _days(self, session, handle, arg):
        try:
            days = int(arg)
        except (TypeError, ValueError):
            days = 0
        if days <= 0:
            raise ValidationError("Usage: /days N, where N is a positive number of days")
        # Today counts as one of the N days
        return await self._period_total(session, handle, DateRange.custom(days - 1), f"the last {days} days")

    async def _olap(self, session, handle, arg):
        alias, groups = await self._call_server(
            lambda token, url: self.olap_service.fetch_report(url, token))
        session.olap_groups = groups

        if not groups:
            return await self._then_main_menu(session, handle, [Reply("Nothing found for your filters.")])

        reply = Reply(f"OLAP report mode\\. Current server: *{md(alias)}*",
                      markdown=True, keyboard=chunk(groups))
        return Transition([reply], State.AWAITING_OLAP_CATEGORY_CHOICE)

    async def _show_category(self, session, handle, category):
        rows = session.olap_groups.get(category)
        if rows is None:
            return await self._then_main_menu(session, handle, [Reply(f"Unknown category '{category}'.")])
        try:
            table = self.olap_service.render_category(rows)
        except NotFoundError:
            return await self._then_main_menu(session, handle, [Reply("Nothing found for your filters.")])
        reply = Reply(format_olap_table(category, table), markdown=True)
        return await self._then_main_menu(session, handle, [reply])

    # ------------------------------------------------------------
    # Administration
    # ------------------------------------------------------------

    async def _ask_new_user(self, session, handle, arg):
        return Transition([Reply("Enter the username")], State.AWAITING_NEW_USER_NAME)

    async def _add_user(self, session, handle, text):
        if not normalize_handle(text):
            raise ValidationError("You did not enter a username. Enter the username")
        added = await self.users.add(text)
        name = normalize_handle(text)
        if added:
            message = f"User @{name} added"
        else:
            message = f"User @{name} is already in the user list"
        return await self._then_main_menu(session, handle, [Reply(message)])

    async def _ask_user_to_delete(self, session, handle, arg):
        accounts = await self.users.accounts()
        if not accounts:
            return Transition([Reply("The user list is empty.", keyboard=ADMIN_MENU)],
                              State.AWAITING_ADMIN_MENU_CHOICE)
        reply = Reply("Choose the account to delete", keyboard=chunk(accounts))
        return Transition([reply], State.AWAITING_USER_TO_DELETE)

    async def _delete_user(self, session, handle, text):
        try:
            await self.users.remove(text)
        except NotFoundError as e:
            return await self._then_main_menu(session, handle, [Reply(str(e))])
        return await self._then_main_menu(session, handle, [Reply(f"User @{normalize_handle(text)} deleted")])

    async def _list_users(self, session, handle, arg):
        text = format_handles("Users", await self.users.accounts())
        return Transition([Reply(text), Reply(CHOOSE_OPTION, keyboard=ADMIN_MENU)],
                          State.AWAITING_ADMIN_MENU_CHOICE)

    async def _list_admins(self, session, handle, arg):
        text = format_handles("Admins", self.users.admins())
        return Transition([Reply(text), Reply(CHOOSE_OPTION, keyboard=ADMIN_MENU)],
                          State.AWAITING_ADMIN_MENU_CHOICE)
