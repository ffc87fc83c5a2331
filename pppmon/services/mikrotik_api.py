import socket
import struct
import re
import hashlib
import logging
from dataclasses import dataclass, field
from typing import Dict, Any, Optional, List

from pppmon.config import settings
from pppmon.core.exceptions import DeviceUnreachable, DeviceProtocolError

# Initialize logger
logger = logging.getLogger(__name__)

# Dynamic PPP server interfaces are named "<pppoe-john>" while connected; some
# firmware drops the angle brackets.
PPP_INTERFACE_PATTERN = re.compile(r'^<?(pppoe|pptp|l2tp|sstp|ovpn)-(.+?)>?$', re.IGNORECASE)


def match_ppp_interface(interface_name: str) -> Optional[str]:
    """Return the secret name a PPP tunnel interface belongs to, or None."""
    if not interface_name:
        return None
    match = PPP_INTERFACE_PATTERN.match(interface_name.strip())
    if not match:
        return None
    return match.group(2) or None


def _to_int(value: Any) -> int:
    try:
        return int(str(value).strip())
    except (TypeError, ValueError):
        return 0


def _to_bool(value: Any) -> bool:
    return str(value).strip().lower() in ("true", "yes")


# =============================================================================
# TYPED RECORDS PARSED FROM API REPLIES
# =============================================================================

@dataclass
class PPPSecret:
    id: str
    name: str
    service: str = "any"
    profile: str = "default"
    comment: Optional[str] = None
    disabled: bool = False

    @classmethod
    def from_reply(cls, data: Dict[str, str]) -> "PPPSecret":
        return cls(
            id=data.get(".id", ""),
            name=data.get("name", ""),
            service=data.get("service") or "any",
            profile=data.get("profile") or "default",
            comment=data.get("comment") or None,
            disabled=_to_bool(data.get("disabled", "false")),
        )


@dataclass
class PPPActive:
    id: str
    name: str
    service: str = ""
    caller_id: Optional[str] = None
    address: Optional[str] = None
    uptime: Optional[str] = None

    @classmethod
    def from_reply(cls, data: Dict[str, str]) -> "PPPActive":
        return cls(
            id=data.get(".id", ""),
            name=data.get("name", ""),
            service=data.get("service", ""),
            caller_id=data.get("caller-id") or None,
            address=data.get("address") or None,
            uptime=data.get("uptime") or None,
        )


@dataclass
class InterfaceCounters:
    name: str
    rx_byte: int = 0
    tx_byte: int = 0
    rx_bps: int = 0
    tx_bps: int = 0
    running: bool = False

    @classmethod
    def from_reply(cls, data: Dict[str, str]) -> "InterfaceCounters":
        return cls(
            name=data.get("name", ""),
            rx_byte=_to_int(data.get("rx-byte", 0)),
            tx_byte=_to_int(data.get("tx-byte", 0)),
            rx_bps=_to_int(data.get("rx-bits-per-second", 0)),
            tx_bps=_to_int(data.get("tx-bits-per-second", 0)),
            running=_to_bool(data.get("running", "false")),
        )


@dataclass
class SessionTraffic:
    """Per-subscriber counters seen from the subscriber's side of the tunnel."""
    tx_bytes: int = 0
    rx_bytes: int = 0
    tx_rate: int = 0
    rx_rate: int = 0


@dataclass
class RouterSnapshot:
    secrets: List[PPPSecret] = field(default_factory=list)
    active: List[PPPActive] = field(default_factory=list)
    interfaces: List[InterfaceCounters] = field(default_factory=list)
    identity: Optional[str] = None

    def traffic_by_name(self) -> Dict[str, SessionTraffic]:
        # The router counts from its own side: what it receives on the tunnel
        # is what the subscriber sent.
        traffic: Dict[str, SessionTraffic] = {}
        for iface in self.interfaces:
            name = match_ppp_interface(iface.name)
            if name is None or name in traffic:
                continue
            traffic[name] = SessionTraffic(
                tx_bytes=iface.rx_byte,
                rx_bytes=iface.tx_byte,
                tx_rate=iface.rx_bps,
                rx_rate=iface.tx_bps,
            )
        return traffic


# =============================================================================
# ROUTEROS API CLIENT
# =============================================================================

class MikroTikAPI:
    def __init__(self, host: str, username: str, password: str, port: int = 8728,
                 timeout: float = None, connect_timeout: float = None):
        self.host = host
        self.username = username
        self.password = password
        self.port = port
        self.timeout = settings.MIKROTIK_TIMEOUT if timeout is None else timeout
        self.connect_timeout = settings.MIKROTIK_CONNECT_TIMEOUT if connect_timeout is None else connect_timeout
        self.sock = None
        self.connected = False

    def __enter__(self):
        self.connect()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.disconnect()
        return False

    def connect(self) -> "MikroTikAPI":
        try:
            self.sock = socket.create_connection((self.host, self.port), timeout=self.connect_timeout)
            self.sock.settimeout(self.timeout)
            self.login()
        except DeviceUnreachable:
            self.disconnect()
            raise
        except (OSError, DeviceProtocolError) as e:
            self.disconnect()
            logger.error(f"Connection failed to {self.host}: {e}")
            raise DeviceUnreachable(f"Failed to connect to {self.host}:{self.port}: {e}") from e
        return self

    def disconnect(self):
        if self.sock:
            try:
                self.sock.close()
            except Exception as e:
                logger.debug(f"Ignoring error while closing socket to {self.host}: {e}")
            self.sock = None
        self.connected = False

    # -- wire format ---------------------------------------------------------

    def encode_length(self, length: int) -> bytes:
        if length < 0x80:
            return struct.pack('B', length)
        elif length < 0x4000:
            length |= 0x8000
            return struct.pack('>H', length)
        elif length < 0x200000:
            length |= 0xC00000
            return struct.pack('>I', length)[1:]
        elif length < 0x10000000:
            length |= 0xE0000000
            return struct.pack('>I', length)
        else:
            return struct.pack('B', 0xF0) + struct.pack('>I', length)

    def _recv_exact(self, size: int) -> bytes:
        data = b""
        while len(data) < size:
            chunk = self.sock.recv(size - len(data))
            if not chunk:
                raise DeviceUnreachable(f"Connection to {self.host} closed by router")
            data += chunk
        return data

    def decode_length(self) -> int:
        c = self._recv_exact(1)[0]
        if (c & 0x80) == 0:
            return c
        elif (c & 0xC0) == 0x80:
            return ((c & ~0xC0) << 8) + self._recv_exact(1)[0]
        elif (c & 0xE0) == 0xC0:
            return ((c & ~0xE0) << 16) + struct.unpack('>H', self._recv_exact(2))[0]
        elif (c & 0xF0) == 0xE0:
            return ((c & ~0xF0) << 24) + struct.unpack('>I', b'\x00' + self._recv_exact(3))[0]
        elif (c & 0xF8) == 0xF0:
            return struct.unpack('>I', self._recv_exact(4))[0]
        raise DeviceProtocolError(f"Invalid length prefix 0x{c:02x} from {self.host}")

    def send_word(self, word: str):
        encoded_word = word.encode('utf-8')
        self.sock.sendall(self.encode_length(len(encoded_word)) + encoded_word)

    def read_word(self) -> str:
        length = self.decode_length()
        if length == 0:
            return ""
        return self._recv_exact(length).decode('utf-8', errors='replace')

    def send_sentence(self, words: List[str]):
        for word in words:
            self.send_word(word)
        self.send_word("")

    def read_sentence(self) -> List[str]:
        sentence = []
        while True:
            word = self.read_word()
            if word == "":
                break
            sentence.append(word)
        return sentence

    def talk(self, words: List[str]) -> List[List[str]]:
        """Send one sentence and read replies up to and including !done."""
        if self.sock is None:
            raise DeviceUnreachable(f"Not connected to {self.host}")
        try:
            self.send_sentence(words)
            replies = []
            while True:
                sentence = self.read_sentence()
                if not sentence:
                    continue
                replies.append(sentence)
                if sentence[0] == "!fatal":
                    self.disconnect()
                    raise DeviceUnreachable(f"Router {self.host} closed the session: {sentence[1:]}")
                if sentence[0] == "!done":
                    return replies
        except OSError as e:
            self.disconnect()
            raise DeviceUnreachable(f"I/O error talking to {self.host}: {e}") from e

    @staticmethod
    def _trap_message(replies: List[List[str]]) -> Optional[str]:
        for sentence in replies:
            if sentence[0] == "!trap":
                for item in sentence[1:]:
                    if item.startswith("=message="):
                        return item[9:]
                return "Command failed"
        return None

    def login(self) -> bool:
        replies = self.talk(["/login", f"=name={self.username}", f"=password={self.password}"])
        error = self._trap_message(replies)
        if error:
            raise DeviceUnreachable(f"Login failed to {self.host}: {error}")
        # Pre-6.43 firmware answers with an MD5 challenge instead of logging in
        for word in replies[-1][1:]:
            if word.startswith("=ret="):
                self._login_challenge(word.split("=", 2)[2])
                break
        self.connected = True
        logger.info(f"Successfully logged in to {self.host}")
        return True

    def _login_challenge(self, challenge: str):
        challenge_bytes = bytes.fromhex(challenge)
        md5 = hashlib.md5(b"\x00" + self.password.encode("utf-8") + challenge_bytes).hexdigest()
        replies = self.talk(["/login", f"=name={self.username}", f"=response=00{md5}"])
        error = self._trap_message(replies)
        if error:
            raise DeviceUnreachable(f"Login challenge failed to {self.host}: {error}")

    def send_command(self, command: str, arguments: Dict[str, str] = None,
                     queries: Dict[str, str] = None) -> List[Dict[str, str]]:
        words = [command]
        if arguments:
            for key, value in arguments.items():
                words.append(f"={key}={value}")
        if queries:
            for key, value in queries.items():
                words.append(f"?{key}={value}")

        replies = self.talk(words)
        error = self._trap_message(replies)
        if error:
            raise DeviceProtocolError(f"{command} failed on {self.host}: {error}")

        responses = []
        for sentence in replies:
            if sentence[0] != "!re":
                continue
            data = {}
            for item in sentence[1:]:
                if item.startswith("="):
                    key_value = item[1:].split("=", 1)
                    if len(key_value) == 2:
                        data[key_value[0]] = key_value[1]
            responses.append(data)
        return responses

    # -- PPP menu ------------------------------------------------------------

    def list_secrets(self) -> List[PPPSecret]:
        return [PPPSecret.from_reply(d) for d in self.send_command("/ppp/secret/print") if d.get("name")]

    def list_active_sessions(self) -> List[PPPActive]:
        return [PPPActive.from_reply(d) for d in self.send_command("/ppp/active/print") if d.get("name")]

    def list_interfaces(self) -> List[InterfaceCounters]:
        return [InterfaceCounters.from_reply(d) for d in self.send_command("/interface/print")]

    def list_profiles(self) -> List[str]:
        return [d["name"] for d in self.send_command("/ppp/profile/print") if d.get("name")]

    def get_identity(self) -> Optional[str]:
        result = self.send_command("/system/identity/print")
        return result[0].get("name") if result else None

    def fetch_snapshot(self, with_identity: bool = False) -> RouterSnapshot:
        return RouterSnapshot(
            secrets=self.list_secrets(),
            active=self.list_active_sessions(),
            interfaces=self.list_interfaces(),
            identity=self.get_identity() if with_identity else None,
        )

    def find_secret(self, name: str) -> Optional[PPPSecret]:
        found = self.send_command("/ppp/secret/print", queries={"name": name})
        return PPPSecret.from_reply(found[0]) if found else None

    def find_active_sessions(self, name: str) -> List[PPPActive]:
        return [PPPActive.from_reply(d) for d in self.send_command("/ppp/active/print", queries={"name": name})]

    def set_secret_field(self, name: str, field_name: str, value: str) -> bool:
        secret = self.find_secret(name)
        if secret is None:
            logger.warning(f"Secret {name} not found on {self.host}, nothing to set")
            return False
        self.send_command("/ppp/secret/set", {"numbers": secret.id, field_name: value})
        return True

    def remove_active_session(self, session_id: str) -> bool:
        try:
            self.send_command("/ppp/active/remove", {"numbers": session_id})
            return True
        except DeviceProtocolError as e:
            # Session already gone
            logger.warning(f"Could not remove active session {session_id} on {self.host}: {e}")
            return False

    def add_secret(self, name: str, password: str, profile: str,
                   service: str = "pppoe", comment: str = "") -> None:
        self.send_command("/ppp/secret/add", {
            "name": name,
            "password": password,
            "service": service or "pppoe",
            "profile": profile,
            "comment": comment or "",
        })
