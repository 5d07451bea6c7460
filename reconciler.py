# reconciler.py
"""
Access control for the guarded chat.

Every inbound event re-reads the registry, decides, writes at most one
registry cell per customer, then drives the messaging platform. Registry
writes are the authoritative side effect; messaging calls that fail after a
write are logged and raised to the caller without undoing the write.
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from enum import Enum
from typing import Dict, Iterable, List, Optional

import regcodec
from errors import MessagingError, RegistryUnavailable
from messaging import MessagingClient, invite_markup
from models import ChatJoin, InboundUpdate, OtherUpdate, SubscriberRecord, TextCommand
from registry import RegistryClient

logger = logging.getLogger(__name__)


class Reply(str, Enum):
    OUT = "out"
    WELCOME = "welcome"
    ALREADY_REGISTERED = "already_registered"
    OTHER_ACCOUNT = "other_account"
    IDENTITY_IN_USE = "identity_in_use"
    ERROR = "error"
    NEED_LINK = "need_link"
    HELP = "help"


REPLY_TEXT = {
    Reply.OUT: "Sorry, you're out: this link does not belong to an active subscription.",
    Reply.WELCOME: "Welcome, you're in! Use the button below to join the chat.",
    Reply.ALREADY_REGISTERED: "You're already registered. Here is your invite again.",
    Reply.OTHER_ACCOUNT: "This subscription is already registered with a different account.",
    Reply.IDENTITY_IN_USE: "Your account is already linked to another active subscription.",
    Reply.ERROR: "Something went wrong. Please try again in a few minutes.",
    Reply.NEED_LINK: "Please open the personal registration link you received after subscribing.",
    Reply.HELP: "Open your personal registration link to get an invite to the members chat.",
}

# replies that carry the invite button
INVITE_REPLIES = {Reply.WELCOME, Reply.ALREADY_REGISTERED}


class KeyedLocks:
    """In-process mutual exclusion per key. Entries disappear once nobody holds or waits.

    Registration holds the requester's identity key, then the email key;
    cancellation holds only the email key, so the order never inverts.
    """

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}
        self._users: Dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, key: str):
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if not self._users[key]:
                del self._users[key]
                del self._locks[key]

    def __len__(self):
        return len(self._locks)


def find_by_email(rows: Iterable[SubscriberRecord], email: str, active_only: bool = False) -> Optional[SubscriberRecord]:
    for record in rows:
        if record.email == email and (record.active or not active_only):
            return record
    return None


def find_by_identity(rows: Iterable[SubscriberRecord], identity: int) -> List[SubscriberRecord]:
    return [record for record in rows if record.linked_identity == identity]


class Reconciler:
    def __init__(
        self,
        registry: RegistryClient,
        messaging: MessagingClient,
        guarded_chat_id: int,
        admin_chat_id: Optional[int] = None,
        locks: Optional[KeyedLocks] = None,
    ):
        self.registry = registry
        self.messaging = messaging
        self.guarded_chat_id = guarded_chat_id
        self.admin_chat_id = admin_chat_id
        self.locks = locks or KeyedLocks()

    async def handle_update(self, update: InboundUpdate):
        if isinstance(update, TextCommand):
            return await self.handle_command(update)
        if isinstance(update, ChatJoin):
            return await self.handle_chat_join(update)
        if isinstance(update, OtherUpdate):
            logger.debug(f"Ignoring update {update.update_id}")
        return None

    async def handle_command(self, command: TextCommand) -> Optional[Reply]:
        if not command.is_private:
            return None
        if command.command == "start":
            if not command.payload:
                await self._reply(command.chat_id, Reply.NEED_LINK)
                return Reply.NEED_LINK
            email = regcodec.decode(command.payload)
            return await self.handle_registration(email, command.sender_id, command.chat_id)
        if command.command == "help":
            await self._reply(command.chat_id, Reply.HELP)
            return Reply.HELP
        return None

    async def handle_registration(self, email: str, requester_id: int, reply_chat_id: int) -> Reply:
        try:
            verdict = await self._link(email, requester_id)
        except RegistryUnavailable:
            logger.exception(f"Registration for {requester_id} aborted: registry unavailable")
            verdict = Reply.ERROR

        logger.info(f"Registration by {requester_id}: {verdict.value}")
        if verdict == Reply.WELCOME:
            try:
                await self.messaging.unban(self.guarded_chat_id, requester_id)
            except MessagingError as e:
                # no ban to lift, or the requester is an administrator
                logger.info(f"Unban of {requester_id} skipped: {e}")
        await self._reply(reply_chat_id, verdict)
        return verdict

    async def _link(self, email: str, requester_id: int) -> Reply:
        async with self.locks.hold(f"identity:{requester_id}"), self.locks.hold(f"email:{email}"):
            rows = await self.registry.fetch_rows()
            record = find_by_email(rows, email)
            if record is None or not record.active:
                return Reply.OUT
            if record.linked_identity == requester_id:
                return Reply.ALREADY_REGISTERED
            if record.is_linked:
                return Reply.OTHER_ACCOUNT

            holders = [r for r in find_by_identity(rows, requester_id) if r.row_number != record.row_number]
            if any(holder.active for holder in holders):
                return Reply.IDENTITY_IN_USE

            await self.registry.write_cell(self.registry.linked_identity_cell(record), str(requester_id))
            logger.info(f"Linked {requester_id} to registry row {record.row_number}")

            # best effort: a link on a lapsed row grants no access
            for stale in holders:
                try:
                    await self.registry.write_cell(self.registry.linked_identity_cell(stale), "")
                    logger.info(f"Released {requester_id} from lapsed row {stale.row_number}")
                except RegistryUnavailable as e:
                    logger.warning(f"Could not release {requester_id} from lapsed row {stale.row_number}: {e}")
            return Reply.WELCOME

    async def _reply(self, chat_id: int, reply: Reply):
        markup = None
        if reply in INVITE_REPLIES:
            link = await self.messaging.fetch_or_create_invite_link(self.guarded_chat_id)
            markup = invite_markup(link)
        await self.messaging.send_message(chat_id, REPLY_TEXT[reply], markup)

    async def handle_chat_join(self, join: ChatJoin) -> List[int]:
        """Kick every joiner without an active linked registry row. Returns the kicked ids."""
        if join.chat_id != self.guarded_chat_id:
            logger.debug(f"Ignoring join in unguarded chat {join.chat_id}")
            return []

        self_id = None
        try:
            self_id = (await self.messaging.who_am_i()).get("id")
        except MessagingError as e:
            logger.warning(f"Could not resolve own identity: {e}")
        joiners = [member for member in dict.fromkeys(join.member_ids) if member != self_id]
        if not joiners:
            return []

        rows = await self.registry.fetch_rows()
        verified = {record.linked_identity for record in rows if record.active and record.is_linked}
        return await self._fan_out(
            [member for member in joiners if member not in verified],
            reason="joined without an active registration",
        )

    async def handle_cancellation(self, email: str) -> Optional[SubscriberRecord]:
        """Deactivate the active row for email and kick its linked identity. Idempotent."""
        async with self.locks.hold(f"email:{email}"):
            rows = await self.registry.fetch_rows()
            record = find_by_email(rows, email, active_only=True)
            if record is None:
                logger.info(f"Cancellation for {email}: no active row, nothing to do")
                return None
            await self.registry.write_cell(self.registry.active_cell(record), "FALSE")
            logger.info(f"Cancellation for {email}: row {record.row_number} deactivated")

        if record.is_linked:
            still_active = any(r.active and r.row_number != record.row_number
                               for r in find_by_identity(rows, record.linked_identity))
            if not still_active:
                await self._remove(record.linked_identity, reason=f"subscription {email} cancelled")
        return record

    async def sweep_lapsed(self) -> List[int]:
        """Kick identities linked only to inactive rows."""
        rows = await self.registry.fetch_rows()
        verified = {record.linked_identity for record in rows if record.active and record.is_linked}
        lapsed = sorted({record.linked_identity for record in rows
                         if not record.active and record.is_linked} - verified)
        kicked = await self._fan_out(lapsed, reason="subscription lapsed")
        logger.info(f"Lapse sweep kicked {len(kicked)} of {len(lapsed)} lapsed identities")
        return kicked

    async def _fan_out(self, identities: List[int], reason: str) -> List[int]:
        results = await asyncio.gather(
            *(self._remove(identity, reason) for identity in identities),
            return_exceptions=True,
        )
        kicked, failures = [], []
        for identity, result in zip(identities, results):
            if isinstance(result, BaseException):
                logger.error(f"Failed to kick {identity}: {result}")
                failures.append(result)
            else:
                kicked.append(identity)
        if failures:
            raise failures[0]
        return kicked

    async def _remove(self, identity: int, reason: str):
        await self.messaging.kick(self.guarded_chat_id, identity)
        logger.info(f"Removed {identity} from guarded chat: {reason}")
        if self.admin_chat_id is None:
            return
        try:
            await self.messaging.send_message(self.admin_chat_id, f"Removed {identity}: {reason}")
        except MessagingError as e:
            logger.warning(f"Admin notice for {identity} failed: {e}")
