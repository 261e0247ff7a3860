"""Async IMAP client wrapping imap-tools.

imap-tools is synchronous; all public methods use asyncio.to_thread()
for non-blocking operation.

Usage::

    async with ImapClient(account_config) as imap:
        messages = await imap.fetch_after_uid(last_uid=1200, limit=100)
        await imap.archive([m.uid for m in messages])
"""

import asyncio
import logging
from email.utils import parseaddr
from typing import Protocol

from imap_tools import AND, U, MailBox, MailboxLoginError, MailMessage

from jenn.schemas.mail import FetchedMessage, MailAccountConfig

logger = logging.getLogger(__name__)

DEFAULT_FETCH_LIMIT = 50


class MailProvider(Protocol):
    """Capability surface the sync layer and rule pipeline rely on."""

    async def fetch_after_uid(self, last_uid: int, limit: int = DEFAULT_FETCH_LIMIT) -> list[FetchedMessage]: ...

    async def fetch_message(self, uid: int) -> FetchedMessage: ...

    async def archive(self, uids: list[int]) -> None: ...

    async def move(self, uids: list[int], target_folder: str) -> None: ...

    async def mark_read(self, uids: list[int]) -> None: ...

    async def save_draft(self, to: str, subject: str, body: str) -> None: ...


def _header(msg: MailMessage, name: str) -> str:
    values = (getattr(msg, "headers", None) or {}).get(name) or ("",)
    return values[0].strip()


def _parse_message(msg: MailMessage, account_email: str) -> FetchedMessage:
    """Convert an imap-tools MailMessage to a FetchedMessage."""
    from_name, from_addr = parseaddr(msg.from_)
    message_id = _header(msg, "message-id")
    return FetchedMessage(
        uid=int(msg.uid),
        account_email=account_email,
        message_id=message_id,
        thread_id=_header(msg, "in-reply-to") or message_id or str(msg.uid),
        from_address=from_addr or msg.from_,
        from_name=from_name,
        to=list(msg.to),
        subject=msg.subject or "(no subject)",
        date=msg.date,
        flags=list(msg.flags),
        body_text=msg.text or "",
        body_html=msg.html or "",
    )


class ImapClient:
    """Async IMAP client wrapping imap-tools.

    Usage::

        async with ImapClient(account_config) as imap:
            messages = await imap.fetch_after_uid(0, limit=100)
    """

    def __init__(self, config: MailAccountConfig) -> None:
        self._config = config
        self._mailbox: MailBox | None = None

    async def __aenter__(self) -> "ImapClient":
        self._mailbox = await asyncio.to_thread(self._connect)
        return self

    async def __aexit__(self, *exc: object) -> None:
        if self._mailbox:
            await asyncio.to_thread(self._disconnect)
            self._mailbox = None

    def _connect(self) -> MailBox:
        """Connect and login (sync, called via to_thread)."""
        if self._config.ssl:
            mb = MailBox(self._config.server, port=self._config.port)
        else:
            from imap_tools import MailBoxUnencrypted

            mb = MailBoxUnencrypted(self._config.server, port=self._config.port)

        try:
            mb.login(self._config.email, self._config.password)
        except MailboxLoginError:
            logger.error("IMAP login failed for %s", self._config.email)
            raise

        logger.info("Connected to %s as %s", self._config.server, self._config.email)
        return mb

    def _disconnect(self) -> None:
        """Logout and close (sync, called via to_thread)."""
        if self._mailbox:
            try:
                self._mailbox.logout()
            except Exception:
                logger.debug("Error during IMAP logout", exc_info=True)

    @property
    def mailbox(self) -> MailBox:
        if self._mailbox is None:
            raise RuntimeError("ImapClient is not connected. Use 'async with' context.")
        return self._mailbox

    @property
    def inbox(self) -> str:
        return self._config.folders.get("inbox", "INBOX")

    # --- Fetch ---

    async def fetch_after_uid(
        self, last_uid: int, limit: int = DEFAULT_FETCH_LIMIT
    ) -> list[FetchedMessage]:
        """Fetch messages with UID strictly greater than ``last_uid``.

        Args:
            last_uid: The mailbox watermark.
            limit: Maximum number of messages (0 = no cap).

        Returns:
            Messages in ascending UID order.
        """

        def _fetch() -> list[FetchedMessage]:
            self.mailbox.folder.set(self.inbox)
            # "n:*" always matches the newest message, even when its UID is
            # below n, so filter again client-side.
            found = self.mailbox.uids(AND(uid=U(last_uid + 1, "*")))
            uids = sorted(u for u in (int(x) for x in found) if u > last_uid)
            if limit > 0:
                uids = uids[:limit]
            if not uids:
                return []
            msgs = self.mailbox.fetch(
                AND(uid=[str(u) for u in uids]),
                mark_seen=False,
                bulk=True,
            )
            parsed = [_parse_message(m, self._config.email) for m in msgs]
            return sorted(parsed, key=lambda m: m.uid)

        return await asyncio.to_thread(_fetch)

    async def fetch_message(self, uid: int) -> FetchedMessage:
        """Fetch a single message by UID.

        Raises:
            ValueError: If no message with that UID exists in the inbox.
        """

        def _fetch() -> FetchedMessage:
            self.mailbox.folder.set(self.inbox)
            msgs = list(
                self.mailbox.fetch(AND(uid=str(uid)), mark_seen=False, limit=1)
            )
            if not msgs:
                raise ValueError(f"Email UID {uid} not found in {self.inbox}")
            return _parse_message(msgs[0], self._config.email)

        return await asyncio.to_thread(_fetch)

    # --- Actions ---

    async def move(self, uids: list[int], target_folder: str) -> None:
        """Move messages to a folder.

        Gmail gets COPY + DELETE since it does not support MOVE reliably.
        """
        if not uids:
            return
        ids = [str(u) for u in uids]

        def _do() -> None:
            if self._config.is_gmail:
                self.mailbox.copy(ids, target_folder)
                self.mailbox.delete(ids)
            else:
                self.mailbox.move(ids, target_folder)
            logger.info("Moved %d email(s) to %s", len(ids), target_folder)

        await asyncio.to_thread(_do)

    async def archive(self, uids: list[int]) -> None:
        """Move messages out of the inbox into the archive folder."""
        await self.move(uids, self._config.folders.get("archive", "Archive"))

    async def flag(self, uids: list[int], flag: str, *, value: bool = True) -> None:
        """Set or unset a flag on messages."""
        if not uids:
            return

        def _do() -> None:
            self.mailbox.flag([str(u) for u in uids], {flag}, value)
            logger.info(
                "%s flag %s on %d email(s)",
                "Set" if value else "Cleared",
                flag,
                len(uids),
            )

        await asyncio.to_thread(_do)

    async def mark_read(self, uids: list[int]) -> None:
        await self.flag(uids, "\\Seen", value=True)

    async def save_draft(self, to: str, subject: str, body: str) -> None:
        """Append a plain-text draft to the drafts folder."""
        from email.message import EmailMessage

        draft = EmailMessage()
        draft["From"] = self._config.email
        draft["To"] = to
        draft["Subject"] = subject if subject.lower().startswith("re:") else f"Re: {subject}"
        draft.set_content(body)
        folder = self._config.folders.get("drafts", "Drafts")

        def _do() -> None:
            self.mailbox.append(draft.as_bytes(), folder, flag_set=["\\Draft"])
            logger.info("Saved draft reply to %s in %s", to, folder)

        await asyncio.to_thread(_do)
