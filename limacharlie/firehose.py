# SPDX-License-Identifier: Apache-2.0
# Copyright (c) 2025 Eul Bite

"""
Firehose - receive organization data pushed over TLS.

The cloud connects to us: a syslog output pointing at this listener is
registered on start, and every newline-delimited record it sends is put
on the `messages` queue. Records that cannot be accepted (invalid JSON in
parse mode, or a full queue) are counted as dropped and copied to
`error_messages`.

Without a certificate pair a self-signed one is generated for the
listening address.

Shutdown stops accepting first, lets open connections finish for up to
shutdown_grace seconds, then closes the ones still open.

Usage:
    opts = FirehoseOptions(
        listen_ip="0.0.0.0", listen_port=4443,
        connect_ip="203.0.113.7",
        output=FirehoseOutputOptions(unique_name="edr", type="event"),
    )
    async with Firehose(client, opts) as fh:
        while True:
            msg = await fh.get()
            print(msg.content)
"""

import asyncio
import datetime
import ipaddress
import logging
import os
import ssl
import tempfile
from dataclasses import dataclass
from typing import Any

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID

from .client import Client
from .errors import DecodeError, InvalidOptionsError, LimaCharlieError
from .outputs import output_add, output_delete, outputs
from .serialization import loads_json
from .types import OutputConfig

logger = logging.getLogger(__name__)

OUTPUT_PREFIX = "tmp_live_"
CIPHERS = "ECDHE-RSA-AES128-GCM-SHA256"
CERT_VALIDITY_DAYS = 3650
DEFAULT_KEY_SIZE = 4096
MAX_LINE_SIZE = 4 * 1024 * 1024


@dataclass
class FirehoseOutputOptions:
    """Remote output to register so the cloud knows where to send data."""
    unique_name: str = ""
    # Output data type: event, detect, audit, deployment...
    type: str = "event"
    investigation_id: str = ""
    tag: str = ""
    category: str = ""
    sensor_id: str = ""
    is_delete_on_failure: bool = False

    @property
    def output_name(self) -> str:
        return f"{OUTPUT_PREFIX}{self.unique_name}"


@dataclass
class FirehoseOptions:
    """Firehose configuration."""
    listen_ip: str = "0.0.0.0"
    listen_port: int = 0
    # Address the cloud should connect to, defaults to the listening one
    connect_ip: str = ""
    connect_port: int = 0

    # PEM files; both empty means a self-signed certificate is generated
    ssl_cert_path: str = ""
    ssl_key_path: str = ""

    max_message_count: int = 1024
    max_error_message_count: int = 1024
    parse_message: bool = True

    # TLS handshake deadline for accepted connections
    idle_timeout: float = 5.0
    shutdown_grace: float = 10.0

    output: FirehoseOutputOptions | None = None
    key_size: int = DEFAULT_KEY_SIZE

    def validate(self) -> "FirehoseOptions":
        if bool(self.ssl_cert_path) != bool(self.ssl_key_path):
            missing = "ssl_key_path" if self.ssl_cert_path else "ssl_cert_path"
            raise InvalidOptionsError("certificate and key paths must be given together", field=missing)
        if self.max_message_count < 1:
            raise InvalidOptionsError("max_message_count must be >= 1", field="max_message_count")
        if self.max_error_message_count < 1:
            raise InvalidOptionsError("max_error_message_count must be >= 1", field="max_error_message_count")
        if not 0 <= self.listen_port <= 65535:
            raise InvalidOptionsError(f"invalid listen port {self.listen_port}", field="listen_port")
        if self.shutdown_grace < 0:
            raise InvalidOptionsError("shutdown_grace must be >= 0", field="shutdown_grace")
        return self


@dataclass
class FirehoseMessage:
    """One received record: the raw line plus its parsed form in parse mode."""
    raw: str
    content: Any = None
    error: str | None = None


@dataclass
class FirehoseMetrics:
    received: int = 0
    dropped: int = 0
    connections: int = 0

    def to_dict(self) -> dict:
        return {"received": self.received, "dropped": self.dropped, "connections": self.connections}


def generate_self_signed_cert(
    hosts: list[str] | None = None,
    key_size: int = DEFAULT_KEY_SIZE,
) -> tuple[bytes, bytes]:
    """
    Create a self-signed certificate and its private key.

    The SAN always covers 127.0.0.1 and ::1. Each host is added as an IP
    address, or as a DNS name when it is not an IP literal.

    Returns:
        (certificate PEM, private key PEM)
    """
    key = rsa.generate_private_key(public_exponent=65537, key_size=key_size)
    name = x509.Name([
        x509.NameAttribute(NameOID.COMMON_NAME, "limacharlie_firehose"),
        x509.NameAttribute(NameOID.ORGANIZATION_NAME, "refractionPOINT"),
    ])

    addresses = [ipaddress.ip_address("127.0.0.1"), ipaddress.ip_address("::1")]
    dns_names: list[str] = []
    for host in hosts or []:
        if not host:
            continue
        try:
            addr = ipaddress.ip_address(host)
        except ValueError:
            if host not in dns_names:
                dns_names.append(host)
            continue
        if addr not in addresses and not addr.is_unspecified:
            addresses.append(addr)
    alt_names = [x509.IPAddress(a) for a in addresses] + [x509.DNSName(n) for n in dns_names]

    now = datetime.datetime.now(datetime.timezone.utc)
    cert = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now)
        .not_valid_after(now + datetime.timedelta(days=CERT_VALIDITY_DAYS))
        .add_extension(x509.SubjectAlternativeName(alt_names), critical=False)
        .add_extension(x509.BasicConstraints(ca=True, path_length=None), critical=True)
        .add_extension(
            x509.KeyUsage(
                digital_signature=True,
                content_commitment=False,
                key_encipherment=False,
                data_encipherment=False,
                key_agreement=False,
                key_cert_sign=False,
                crl_sign=False,
                encipher_only=False,
                decipher_only=False,
            ),
            critical=True,
        )
        .add_extension(x509.ExtendedKeyUsage([ExtendedKeyUsageOID.ANY_EXTENDED_KEY_USAGE]), critical=False)
        .sign(key, hashes.SHA256())
    )

    cert_pem = cert.public_bytes(serialization.Encoding.PEM)
    key_pem = key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.TraditionalOpenSSL,
        serialization.NoEncryption(),
    )
    return cert_pem, key_pem


def make_ssl_context(options: FirehoseOptions) -> ssl.SSLContext:
    """Server TLS context restricted to TLS 1.2 with ECDHE-RSA-AES128-GCM."""
    ctx = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
    ctx.minimum_version = ssl.TLSVersion.TLSv1_2
    # TLS 1.3 suites cannot be restricted, so stay on 1.2.
    ctx.maximum_version = ssl.TLSVersion.TLSv1_2
    ctx.set_ciphers(CIPHERS)

    if options.ssl_cert_path:
        try:
            ctx.load_cert_chain(options.ssl_cert_path, options.ssl_key_path)
        except (OSError, ssl.SSLError) as e:
            raise InvalidOptionsError(
                f"cannot load certificate {options.ssl_cert_path} / {options.ssl_key_path}: {e}",
                field="ssl_cert_path",
            ) from e
        return ctx

    cert_pem, key_pem = generate_self_signed_cert([options.listen_ip], key_size=options.key_size)
    # load_cert_chain only reads files.
    with tempfile.TemporaryDirectory(prefix="lc-firehose-") as tmp:
        cert_path = os.path.join(tmp, "cert.pem")
        key_path = os.path.join(tmp, "key.pem")
        with open(cert_path, "wb") as f:
            f.write(cert_pem)
        with open(key_path, "wb") as f:
            f.write(key_pem)
        ctx.load_cert_chain(cert_path, key_path)
    return ctx


class Firehose:
    """
    TLS listener receiving line-delimited records.

    The two queues are bounded by the option counts. Many connections may
    produce concurrently; consumers read `messages` directly or via get().
    """

    def __init__(self, client: Client | None, options: FirehoseOptions):
        self._client = client
        self.options = options.validate()
        if options.output and options.output.unique_name and client is None:
            raise InvalidOptionsError("output registration requires a client", field="output")

        self._ssl_context = make_ssl_context(options)
        self.messages: asyncio.Queue[FirehoseMessage] = asyncio.Queue(maxsize=options.max_message_count)
        self.error_messages: asyncio.Queue[FirehoseMessage] = asyncio.Queue(
            maxsize=options.max_error_message_count
        )

        self._metrics = FirehoseMetrics()
        self._server: asyncio.AbstractServer | None = None
        self._writers: set[asyncio.StreamWriter] = set()
        self._handlers: set[asyncio.Task] = set()
        self._registered_output: str | None = None
        self._closing = False

    @property
    def metrics(self) -> FirehoseMetrics:
        return self._metrics

    @property
    def is_running(self) -> bool:
        return self._server is not None

    @property
    def port(self) -> int:
        """Actual listening port, useful when listen_port is 0."""
        if self._server is None or not self._server.sockets:
            return self.options.listen_port
        return self._server.sockets[0].getsockname()[1]

    @property
    def connect_address(self) -> str:
        ip = self.options.connect_ip or self.options.listen_ip
        port = self.options.connect_port or self.port
        return f"{ip}:{port}"

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.shutdown()
        return False

    async def start(self) -> None:
        """Bind the listener, then register the output if one is configured."""
        if self._server is not None:
            raise LimaCharlieError("firehose already started")

        self._closing = False
        self._server = await asyncio.start_server(
            self._handle_connection,
            host=self.options.listen_ip,
            port=self.options.listen_port,
            ssl=self._ssl_context,
            ssl_handshake_timeout=self.options.idle_timeout,
            limit=MAX_LINE_SIZE,
        )
        logger.info(f"Firehose listening on {self.options.listen_ip}:{self.port}")

        try:
            await self._register_output()
        except BaseException:
            logger.info("Shutting down listener after failed output registration")
            await self._close_listener()
            raise

    async def _register_output(self) -> None:
        out_opts = self.options.output
        if out_opts is None or not out_opts.unique_name:
            return

        name = out_opts.output_name
        existing = await outputs(self._client)
        if name in existing:
            logger.debug(f"Output {name} already registered")
            return

        settings = {
            "dest_host": self.connect_address,
            "is_tls": True,
            "is_strict_tls": False,
            "is_no_header": True,
            "inv_id": out_opts.investigation_id,
            "tag": out_opts.tag,
            "cat": out_opts.category,
            "sid": out_opts.sensor_id,
        }
        output = OutputConfig(
            name=name,
            module="syslog",
            type=out_opts.type,
            settings={k: v for k, v in settings.items() if v != ""},
        )
        await output_add(self._client, output)
        if out_opts.is_delete_on_failure:
            self._registered_output = name
        logger.info(f"Registered output {name} -> {self.connect_address}")

    async def _handle_connection(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        if self._closing:
            writer.close()
            return
        task = asyncio.current_task()
        self._writers.add(writer)
        self._handlers.add(task)
        self._metrics.connections += 1
        peer = writer.get_extra_info("peername")
        logger.debug(f"Firehose connection from {peer}")
        try:
            while True:
                line = await reader.readline()
                if not line:
                    break
                line = line.rstrip(b"\r\n")
                if line:
                    self._handle_line(line)
        except (ConnectionError, ssl.SSLError, asyncio.IncompleteReadError) as e:
            if not self._closing:
                logger.warning(f"Firehose connection {peer} failed: {e}")
        except ValueError as e:
            # Record longer than the stream limit
            logger.warning(f"Firehose connection {peer} dropped: {e}")
        finally:
            self._writers.discard(writer)
            self._handlers.discard(task)
            writer.close()

    def _handle_line(self, line: bytes) -> None:
        self._metrics.received += 1
        raw = line.decode("utf-8", errors="replace")
        message = FirehoseMessage(raw=raw)

        if self.options.parse_message:
            try:
                message.content = loads_json(line)
            except DecodeError as e:
                message.error = str(e)
                self._drop(message, "invalid json")
                return

        try:
            self.messages.put_nowait(message)
        except asyncio.QueueFull:
            message.error = "message queue full"
            self._drop(message, "queue full")

    def _drop(self, message: FirehoseMessage, reason: str) -> None:
        self._metrics.dropped += 1
        try:
            self.error_messages.put_nowait(message)
        except asyncio.QueueFull:
            logger.warning(f"Firehose message dropped ({reason}), error queue full")

    async def get(self, timeout: float | None = None) -> FirehoseMessage:
        """Next message; raises asyncio.TimeoutError after timeout."""
        if timeout is None:
            return await self.messages.get()
        return await asyncio.wait_for(self.messages.get(), timeout)

    def get_dropped(self) -> int:
        return self._metrics.dropped

    def reset_dropped(self) -> None:
        self._metrics.dropped = 0

    async def _close_listener(self) -> None:
        """
        Stop accepting, give open connections up to shutdown_grace to reach
        EOF, then close whatever is left.
        """
        server, self._server = self._server, None
        if server is None:
            return
        self._closing = True
        server.close()
        grace = self.options.shutdown_grace

        pending = set(self._handlers)
        if pending:
            _, pending = await asyncio.wait(pending, timeout=grace)
        if pending:
            logger.warning(f"Firehose closing {len(pending)} connections still open after {grace}s grace")
            for writer in list(self._writers):
                writer.close()
            await asyncio.wait(pending, timeout=grace)
        try:
            await asyncio.wait_for(server.wait_closed(), timeout=grace)
        except asyncio.TimeoutError:
            logger.warning(f"Firehose listener not closed after {grace}s")

    async def shutdown(self) -> None:
        """
        Stop listening and close connections, then delete the registered
        output when it was created with is_delete_on_failure. Idempotent.
        """
        if self._server is None:
            return
        await self._close_listener()
        logger.info("Firehose stopped")

        name, self._registered_output = self._registered_output, None
        if name:
            logger.info(f"Deleting output {name}")
            await output_delete(self._client, name)
