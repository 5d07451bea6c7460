"""
Shared fixtures: in-memory stand-ins for the registry and the messaging platform.
"""

import asyncio
import re

import pytest

from errors import MessagingRejected, RegistryUnavailable
from models import SubscriberRecord
from reconciler import Reconciler

GUARDED_CHAT = -100500
ADMIN_CHAT = -100900
BOT_ID = 1000

_CELL = re.compile(r"^([BC])(\d+)$")


class FakeRegistry:
    """Rows live in memory; cells are addressed as B<row> (active) and C<row> (linked identity)."""

    def __init__(self, rows=None):
        self.rows = []
        self.writes = []
        self.fetches = 0
        self.fail_fetch = False
        self.fail_write = False
        self.fail_cells = set()
        for number, row in enumerate(rows or [], start=2):
            email, active, linked = row
            self.rows.append(SubscriberRecord(row_number=number, email=email, active=active, linked_identity=linked))

    async def fetch_rows(self):
        self.fetches += 1
        # yield like a real network call so concurrent events interleave
        await asyncio.sleep(0)
        if self.fail_fetch:
            raise RegistryUnavailable("registry down")
        return [record.model_copy() for record in self.rows]

    async def write_cell(self, cell_ref, value):
        if self.fail_write or cell_ref in self.fail_cells:
            raise RegistryUnavailable("registry read-only")
        column, number = _CELL.match(cell_ref).groups()
        record = next(r for r in self.rows if r.row_number == int(number))
        if column == "B":
            record.active = value.upper() == "TRUE"
        else:
            record.linked_identity = int(value) if value else None
        self.writes.append((cell_ref, value))

    def active_cell(self, record):
        return f"B{record.row_number}"

    def linked_identity_cell(self, record):
        return f"C{record.row_number}"

    def row(self, email):
        return next(r for r in self.rows if r.email == email)


class FakeMessaging:
    def __init__(self):
        self.sent = []
        self.unbans = []
        self.kicks = []
        self.invites = 0
        self.fail_unban = False
        self.fail_send = False
        self.fail_kick = set()
        self.me = {"id": BOT_ID, "username": "gate_bot", "is_bot": True}

    async def send_message(self, chat_id, text, reply_markup=None):
        if self.fail_send:
            raise MessagingRejected("sendMessage", "Forbidden: bot was blocked by the user", 403)
        self.sent.append((chat_id, text, reply_markup))

    async def unban(self, chat_id, user_id):
        if self.fail_unban:
            raise MessagingRejected("unbanChatMember", "Bad Request: can't remove chat owner", 400)
        self.unbans.append((chat_id, user_id))

    async def kick(self, chat_id, user_id):
        if user_id in self.fail_kick:
            raise MessagingRejected("banChatMember", "Bad Request: not enough rights", 400)
        self.kicks.append((chat_id, user_id))

    async def fetch_or_create_invite_link(self, chat_id):
        self.invites += 1
        return "https://t.me/+guarded"

    async def who_am_i(self):
        return self.me

    def kicked_ids(self):
        return [user_id for _, user_id in self.kicks]


@pytest.fixture
def messaging():
    return FakeMessaging()


@pytest.fixture
def make_reconciler(messaging):
    def factory(rows=None, admin_chat_id=None):
        registry = FakeRegistry(rows)
        reconciler = Reconciler(registry, messaging, GUARDED_CHAT, admin_chat_id=admin_chat_id)
        return reconciler, registry
    return factory
