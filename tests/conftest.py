import datetime
import socket
import ssl
import threading

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID


def make_certificate(
    common_name: str | None, sans: tuple[str, ...] = (), expired: bool = False
) -> tuple[bytes, bytes]:
    key = ec.generate_private_key(ec.SECP256R1())
    attributes = []
    if common_name:
        attributes.append(x509.NameAttribute(NameOID.COMMON_NAME, common_name))
    name = x509.Name(attributes)
    now = datetime.datetime.now(datetime.timezone.utc)
    if expired:
        not_before, not_after = now - datetime.timedelta(days=30), now - datetime.timedelta(days=1)
    else:
        not_before, not_after = now - datetime.timedelta(days=1), now + datetime.timedelta(days=1)
    builder = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(not_before)
        .not_valid_after(not_after)
    )
    if sans:
        builder = builder.add_extension(
            x509.SubjectAlternativeName([x509.DNSName(san) for san in sans]),
            critical=False,
        )
    cert = builder.sign(key, hashes.SHA256())
    cert_pem = cert.public_bytes(serialization.Encoding.PEM)
    key_pem = key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    )
    return cert_pem, key_pem


class TLSServer:
    def __init__(self, certfile: str, keyfile: str, host: str = "127.0.0.1") -> None:
        self.context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
        self.context.load_cert_chain(certfile, keyfile)
        self.sock = socket.create_server((host, 0))
        self.sock.settimeout(0.1)
        self.host, self.port = self.sock.getsockname()[:2]
        self.stop_event = threading.Event()
        self.thread = threading.Thread(target=self._serve, daemon=True)

    def start(self) -> "TLSServer":
        self.thread.start()
        return self

    def stop(self) -> None:
        self.stop_event.set()
        self.thread.join(timeout=2)
        self.sock.close()

    def _serve(self) -> None:
        while not self.stop_event.is_set():
            try:
                conn, _ = self.sock.accept()
            except TimeoutError:
                continue
            except OSError:
                break
            conn.settimeout(2)
            try:
                with self.context.wrap_socket(conn, server_side=True):
                    pass
            except OSError:
                conn.close()


@pytest.fixture
def tls_server(tmp_path):
    servers: list[TLSServer] = []

    def start(
        common_name: str | None = "shop.keyword-example.com",
        sans: tuple[str, ...] = (),
        expired: bool = False,
    ) -> TLSServer:
        cert_pem, key_pem = make_certificate(common_name, sans, expired)
        certfile = tmp_path / f"cert{len(servers)}.pem"
        keyfile = tmp_path / f"key{len(servers)}.pem"
        certfile.write_bytes(cert_pem)
        keyfile.write_bytes(key_pem)
        server = TLSServer(str(certfile), str(keyfile)).start()
        servers.append(server)
        return server

    yield start
    for server in servers:
        server.stop()


@pytest.fixture
def silent_port():
    """A port that completes TCP connects but never speaks TLS."""
    sock = socket.create_server(("127.0.0.1", 0), backlog=64)
    yield sock.getsockname()[1]
    sock.close()


@pytest.fixture
def closed_port():
    sock = socket.create_server(("127.0.0.1", 0))
    port = sock.getsockname()[1]
    sock.close()
    return port


@pytest.fixture
def der_certificate():
    def build(common_name: str | None, sans: tuple[str, ...] = ()) -> bytes:
        cert_pem, _ = make_certificate(common_name, sans)
        cert = x509.load_pem_x509_certificate(cert_pem)
        return cert.public_bytes(serialization.Encoding.DER)

    return build


@pytest.fixture
def duplicate_san_certificate():
    """DER certificate carrying two subjectAltName extensions."""
    key = ec.generate_private_key(ec.SECP256R1())
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, "dup.keyword-example.com")])
    now = datetime.datetime.now(datetime.timezone.utc)
    cert = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - datetime.timedelta(days=1))
        .not_valid_after(now + datetime.timedelta(days=1))
        .add_extension(
            x509.SubjectAlternativeName([x509.DNSName("a.keyword-example.com")]),
            critical=False,
        )
        .add_extension(
            x509.IssuerAlternativeName([x509.DNSName("issuer.example.com")]),
            critical=False,
        )
        .sign(key, hashes.SHA256())
    )
    der = cert.public_bytes(serialization.Encoding.DER)
    # Rewrite the issuerAltName OID (2.5.29.18) into subjectAltName (2.5.29.17).
    ian_oid = b"\x06\x03\x55\x1d\x12"
    assert der.count(ian_oid) == 1
    return der.replace(ian_oid, b"\x06\x03\x55\x1d\x11")
