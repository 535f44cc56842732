"""
Test helper classes: message builders, in-memory IMAP fakes and a scripted TLS server
"""
import asyncio
import ipaddress
import ssl
from datetime import datetime, timedelta, timezone
from email.message import EmailMessage
from pathlib import Path
from typing import Dict, List, Optional, Tuple
from unittest.mock import AsyncMock, MagicMock

from aioimaplib.aioimaplib import Response
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID

from inbox_watch.core.email.imap.connection import ConnectionStats
from inbox_watch.core.email.parser import EmailParser
from inbox_watch.core.models import MailboxState, SearchCriteria, SearchKind
from inbox_watch.core.models.message import IMAP_MONTHS
from inbox_watch.utils.config_manager import ImapConfig
from inbox_watch.utils.errors import ErrorClassifier, FailureCause


class ConfigTestHelper:
    """Helper methods for building configurations"""

    @staticmethod
    def create_test_config(**kwargs) -> ImapConfig:
        """Create a config with fast polling defaults"""
        fields = {
            "email": "tester@example.com",
            "password": "app-password",
            "imap_host": "imap.example.com",
            "polling": {"interval": 0.01, "max_wait": 1.0},
        }
        fields.update(kwargs)
        return ImapConfig.build(**fields)


class MessageTestHelper:
    """Helper methods for building raw RFC822 messages"""

    @staticmethod
    def create_raw_email(
        body: str = "Hello",
        subject: str = "Verification",
        sender: str = "noreply@service.example",
        html: Optional[str] = None,
    ) -> bytes:
        message = EmailMessage()
        message["From"] = sender
        message["To"] = "tester@example.com"
        message["Subject"] = subject
        message["Date"] = "Mon, 06 Jan 2025 10:30:00 +0000"
        message.set_content(body)
        if html is not None:
            message.add_alternative(html, subtype="html")
        return message.as_bytes()


class IMAPTestHelper:
    """Helper methods for mocking the aioimaplib client"""

    @staticmethod
    def response(result: str, *lines) -> Response:
        return Response(result, list(lines))

    @staticmethod
    def create_mock_client():
        """Create an aioimaplib client mock that accepts login and select"""
        client = MagicMock()
        client.login = AsyncMock(
            return_value=Response("OK", [b"CAPABILITY IMAP4rev1", b"LOGIN completed"])
        )
        client.select = AsyncMock(
            return_value=Response(
                "OK",
                [
                    b"FLAGS (\\Answered \\Flagged \\Deleted \\Seen \\Draft)",
                    b"3 EXISTS",
                    b"0 RECENT",
                    b"OK [UIDVALIDITY 1700000000] UIDs valid",
                    b"OK [UIDNEXT 42] Predicted next UID",
                    b"[READ-WRITE] SELECT completed",
                ],
            )
        )
        client.noop = AsyncMock(return_value=Response("OK", [b"NOOP completed"]))
        client.uid_search = AsyncMock(return_value=Response("OK", [b"SEARCH completed"]))
        client.uid = AsyncMock(return_value=Response("OK", [b"FETCH completed"]))
        client.logout = AsyncMock(return_value=Response("OK", [b"BYE", b"LOGOUT completed"]))
        client.close_transport = MagicMock()
        client.is_connection_lost = False
        client.until_lost = lambda awaitable: awaitable
        return client

    @staticmethod
    def fetch_lines(uid: int, raw: bytes, internaldate: str = "06-Jan-2025 10:30:00 +0000"):
        """Lines as aioimaplib delivers them for a single-message UID FETCH"""
        return [
            f'1 FETCH (UID {uid} INTERNALDATE "{internaldate}" BODY[] {{{len(raw)}}}'.encode(),
            bytearray(raw),
            b")",
            b"FETCH completed",
        ]


def network_error(message: str = "Connection lost"):
    return ErrorClassifier.error(FailureCause.CONNECTION_LOST, message)


class FakeMailbox:
    """In-memory mailbox with scheduled deliveries.

    A delivery scheduled for tick N appears when the N-th NOOP is issued,
    across all sessions.
    """

    def __init__(self, uid_validity: int = 1):
        self.uid_validity = uid_validity
        self.messages: Dict[int, Tuple[bytes, datetime]] = {}
        self.ticks = 0
        self._next_uid = 1
        self._scheduled: List[Tuple[int, bytes, Optional[datetime]]] = []

    def deliver(self, raw: bytes, arrived_at: Optional[datetime] = None) -> int:
        uid = self._next_uid
        self._next_uid += 1
        self.messages[uid] = (raw, arrived_at or datetime.now(timezone.utc))
        return uid

    def deliver_body(self, body: str, arrived_at: Optional[datetime] = None) -> int:
        return self.deliver(MessageTestHelper.create_raw_email(body), arrived_at)

    def schedule(self, body: str, on_tick: int = 1) -> None:
        self._scheduled.append((on_tick, MessageTestHelper.create_raw_email(body), None))

    def schedule_raw(self, raw: bytes, on_tick: int = 1) -> None:
        self._scheduled.append((on_tick, raw, None))

    def tick(self) -> None:
        self.ticks += 1
        due = [item for item in self._scheduled if item[0] <= self.ticks]
        self._scheduled = [item for item in self._scheduled if item[0] > self.ticks]
        for _, raw, arrived_at in due:
            self.deliver(raw, arrived_at)

    def latest_uid(self) -> int:
        return max(self.messages, default=0)


class FakeSession:
    """Stands in for IMAPProtocol on top of a FakeMailbox"""

    def __init__(self, mailbox: FakeMailbox):
        self.mailbox = mailbox
        self.calls: List[Tuple] = []
        self.failures: Dict[str, List[Exception]] = {}
        self.usable = True
        self.aborted = False
        self.logged_out = False
        self.mailbox_state = MailboxState(
            exists=len(mailbox.messages),
            uid_next=mailbox.latest_uid() + 1,
            uid_validity=mailbox.uid_validity,
        )

    @property
    def is_usable(self) -> bool:
        return self.usable

    def fail_next(self, operation: str, error: Exception) -> None:
        self.failures.setdefault(operation, []).append(error)

    def fetch_count(self, uid: int) -> int:
        return sum(1 for call in self.calls if call == ("fetch", uid))

    def _record(self, *call) -> None:
        self.calls.append(call)
        pending = self.failures.get(call[0])
        if pending:
            error = pending.pop(0)
            if getattr(error, "retryable", False):
                self.usable = False
            raise error

    async def latest_uid(self) -> int:
        self._record("latest_uid")
        return self.mailbox.latest_uid()

    async def noop(self) -> None:
        self._record("noop")
        self.mailbox.tick()

    async def search(self, criteria: SearchCriteria) -> List[int]:
        self._record("search", criteria.to_imap())
        uids = sorted(self.mailbox.messages)

        if criteria.kind is SearchKind.UID_AFTER:
            found = [uid for uid in uids if uid > criteria.uid]
            # "n:*" matches the highest UID even when it is below n
            return found or uids[-1:]

        if criteria.kind is SearchKind.SINCE:
            # Day granularity, one day early, like SearchCriteria.to_imap
            since_day = (criteria.since - timedelta(days=1)).date()
            return [uid for uid in uids if self.mailbox.messages[uid][1].date() >= since_day]

        return uids

    async def fetch(self, uid: int):
        self._record("fetch", uid)
        if uid not in self.mailbox.messages:
            return None
        raw, arrived_at = self.mailbox.messages[uid]
        return EmailParser.parse_from_bytes(raw, uid, arrived_at)

    async def logout(self) -> None:
        self._record("logout")
        self.logged_out = True

    def abort(self) -> None:
        self.aborted = True
        self.usable = False


class FakeConnection:
    """Stands in for IMAPConnection, creating FakeSessions"""

    def __init__(self, mailbox: Optional[FakeMailbox] = None):
        self.mailbox = mailbox or FakeMailbox()
        self.session: Optional[FakeSession] = None
        self.sessions: List[FakeSession] = []
        self.connect_errors: List[Exception] = []
        self.logout_error: Optional[Exception] = None
        self.connect_calls = 0
        self.reconnect_calls = 0
        self.discard_calls = 0
        self.closed = False
        self.stats = ConnectionStats()

    @property
    def is_closed(self) -> bool:
        return self.closed

    def get_stats(self) -> ConnectionStats:
        return self.stats

    async def connect(self) -> FakeSession:
        self.connect_calls += 1
        if self.connect_errors:
            raise self.connect_errors.pop(0)
        self.session = FakeSession(self.mailbox)
        self.sessions.append(self.session)
        self.stats.connections_created += 1
        return self.session

    async def get_session(self) -> FakeSession:
        if self.closed:
            raise ErrorClassifier.error(FailureCause.SESSION_CLOSED, "logged out")
        if self.session is not None and self.session.is_usable:
            return self.session
        return await self.connect()

    async def reconnect(self) -> FakeSession:
        self.reconnect_calls += 1
        self.stats.reconnections += 1
        self.discard()
        return await self.connect()

    def discard(self) -> None:
        self.discard_calls += 1
        if self.session is not None:
            self.session.abort()
        self.session = None

    async def logout(self) -> None:
        if self.closed:
            return
        self.closed = True
        session, self.session = self.session, None
        if self.logout_error is not None:
            raise self.logout_error
        if session is not None:
            await session.logout()


def _key_usage(**enabled) -> x509.KeyUsage:
    flags = dict.fromkeys(
        (
            "digital_signature",
            "content_commitment",
            "key_encipherment",
            "data_encipherment",
            "key_agreement",
            "key_cert_sign",
            "crl_sign",
            "encipher_only",
            "decipher_only",
        ),
        False,
    )
    flags.update(enabled)
    return x509.KeyUsage(**flags)


class TLSTestHelper:
    """Throwaway certificate authority for local TLS servers"""

    @staticmethod
    def create_certificates(directory: Path) -> Tuple[ssl.SSLContext, ssl.SSLContext]:
        """Issue a 127.0.0.1 server certificate and return (server, client) contexts"""
        now = datetime.now(timezone.utc)
        ca_key = ec.generate_private_key(ec.SECP256R1())
        ca_name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, "inbox-watch test CA")])
        ca_cert = (
            x509.CertificateBuilder()
            .subject_name(ca_name)
            .issuer_name(ca_name)
            .public_key(ca_key.public_key())
            .serial_number(x509.random_serial_number())
            .not_valid_before(now - timedelta(minutes=5))
            .not_valid_after(now + timedelta(days=1))
            .add_extension(x509.BasicConstraints(ca=True, path_length=0), critical=True)
            .add_extension(
                _key_usage(digital_signature=True, key_cert_sign=True, crl_sign=True),
                critical=True,
            )
            .add_extension(
                x509.SubjectKeyIdentifier.from_public_key(ca_key.public_key()), critical=False
            )
            .sign(ca_key, hashes.SHA256())
        )

        server_key = ec.generate_private_key(ec.SECP256R1())
        server_cert = (
            x509.CertificateBuilder()
            .subject_name(x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, "127.0.0.1")]))
            .issuer_name(ca_name)
            .public_key(server_key.public_key())
            .serial_number(x509.random_serial_number())
            .not_valid_before(now - timedelta(minutes=5))
            .not_valid_after(now + timedelta(days=1))
            .add_extension(x509.BasicConstraints(ca=False, path_length=None), critical=True)
            .add_extension(_key_usage(digital_signature=True), critical=True)
            .add_extension(x509.ExtendedKeyUsage([ExtendedKeyUsageOID.SERVER_AUTH]), critical=False)
            .add_extension(
                x509.SubjectAlternativeName(
                    [x509.IPAddress(ipaddress.ip_address("127.0.0.1")), x509.DNSName("localhost")]
                ),
                critical=False,
            )
            .add_extension(
                x509.SubjectKeyIdentifier.from_public_key(server_key.public_key()),
                critical=False,
            )
            .add_extension(
                x509.AuthorityKeyIdentifier.from_issuer_public_key(ca_key.public_key()),
                critical=False,
            )
            .sign(ca_key, hashes.SHA256())
        )

        cert_file = directory / "server.pem"
        key_file = directory / "server.key"
        cert_file.write_bytes(server_cert.public_bytes(serialization.Encoding.PEM))
        key_file.write_bytes(
            server_key.private_bytes(
                serialization.Encoding.PEM,
                serialization.PrivateFormat.PKCS8,
                serialization.NoEncryption(),
            )
        )

        server_context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
        server_context.load_cert_chain(cert_file, key_file)

        client_context = ssl.create_default_context(
            cadata=ca_cert.public_bytes(serialization.Encoding.PEM).decode("ascii")
        )
        client_context.minimum_version = ssl.TLSVersion.TLSv1_2
        return server_context, client_context


def format_internaldate(moment: datetime) -> str:
    moment = moment.astimezone(timezone.utc)
    return (
        f"{moment.day:02d}-{IMAP_MONTHS[moment.month - 1]}-{moment.year} "
        f"{moment:%H:%M:%S} +0000"
    )


class ScriptedIMAPServer:
    """Minimal IMAP4rev1 server over TLS, enough for the real aioimaplib client

    Handles CAPABILITY, LOGIN, SELECT, NOOP, UID SEARCH, UID FETCH and
    LOGOUT. Setting ``drop_on`` to a command name ("UID SEARCH", "SELECT",
    ...) makes the server abort the stream when that command arrives.
    """

    def __init__(self, ssl_context: ssl.SSLContext, password: str = "app-password"):
        self.ssl_context = ssl_context
        self.password = password
        self.uid_validity = 7
        self.messages: Dict[int, Tuple[bytes, str]] = {}
        self.on_noop: List[bytes] = []
        self.commands: List[str] = []
        self.drop_on: Optional[str] = None
        self.port: Optional[int] = None
        self._server = None
        self._writers: List[asyncio.StreamWriter] = []

    def deliver(self, raw: bytes, arrived_at: Optional[datetime] = None) -> int:
        uid = max(self.messages, default=40) + 1
        internaldate = format_internaldate(arrived_at or datetime.now(timezone.utc))
        self.messages[uid] = (raw, internaldate)
        return uid

    def deliver_on_noop(self, raw: bytes) -> None:
        """Queue a message that appears when the client next sends NOOP"""
        self.on_noop.append(raw)

    def drop_connections(self) -> None:
        for writer in self._writers:
            writer.transport.abort()

    async def start(self) -> None:
        self._server = await asyncio.start_server(
            self._handle, "127.0.0.1", 0, ssl=self.ssl_context
        )
        self.port = self._server.sockets[0].getsockname()[1]

    async def stop(self) -> None:
        self.drop_connections()
        self._server.close()
        await self._server.wait_closed()

    async def _handle(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        self._writers.append(writer)
        writer.write(b"* OK IMAP4rev1 test server ready\r\n")

        try:
            while True:
                line = await reader.readline()
                if not line:
                    break

                tag, _, command = line.decode("utf-8").rstrip("\r\n").partition(" ")
                self.commands.append(command)
                words = command.split()
                name = " ".join(words[:2]).upper() if words[0].upper() == "UID" else words[0].upper()

                if name == self.drop_on:
                    writer.transport.abort()
                    return

                writer.write(self._respond(tag, name, words))
                await writer.drain()
                if name == "LOGOUT":
                    break

        except (ConnectionError, ssl.SSLError):
            pass

        finally:
            if not writer.transport.is_closing():
                writer.close()

    def _respond(self, tag: str, name: str, words: List[str]) -> bytes:
        if name == "CAPABILITY":
            return f"* CAPABILITY IMAP4rev1\r\n{tag} OK CAPABILITY completed\r\n".encode()

        if name == "LOGIN":
            if words[-1] != f'"{self.password}"':
                return f"{tag} NO [AUTHENTICATIONFAILED] Invalid credentials\r\n".encode()
            return f"{tag} OK LOGIN completed\r\n".encode()

        if name == "SELECT":
            uid_next = max(self.messages, default=40) + 1
            return (
                f"* {len(self.messages)} EXISTS\r\n"
                f"* 0 RECENT\r\n"
                f"* OK [UIDVALIDITY {self.uid_validity}] UIDs valid\r\n"
                f"* OK [UIDNEXT {uid_next}] Predicted next UID\r\n"
                f"{tag} OK [READ-WRITE] SELECT completed\r\n"
            ).encode()

        if name == "NOOP":
            while self.on_noop:
                self.deliver(self.on_noop.pop(0))
            return f"{tag} OK NOOP completed\r\n".encode()

        if name == "UID SEARCH":
            uids = self._search(words[2:])
            found = " ".join(str(uid) for uid in uids)
            return f"* SEARCH {found}\r\n{tag} OK SEARCH completed\r\n".encode()

        if name == "UID FETCH":
            uid = int(words[2])
            if uid not in self.messages:
                return f"{tag} OK FETCH completed\r\n".encode()

            raw, internaldate = self.messages[uid]
            seq = sorted(self.messages).index(uid) + 1
            header = f'* {seq} FETCH (UID {uid} INTERNALDATE "{internaldate}" BODY[] {{{len(raw)}}}\r\n'
            return header.encode() + raw + f")\r\n{tag} OK FETCH completed\r\n".encode()

        if name == "LOGOUT":
            return f"* BYE logging out\r\n{tag} OK LOGOUT completed\r\n".encode()

        return f"{tag} BAD unsupported command\r\n".encode()

    def _search(self, criteria: List[str]) -> List[int]:
        if criteria[:2] == ["CHARSET", "utf-8"]:
            criteria = criteria[2:]

        uids = sorted(self.messages)
        if criteria and criteria[0] == "UID":
            first = int(criteria[1].split(":")[0])
            # "n:*" matches the highest UID even when it is below n
            return [uid for uid in uids if uid >= first] or uids[-1:]

        return uids
