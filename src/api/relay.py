"""Long-lived Nostr relay subscription for P2P order events."""
import json
import random
import threading
import time
import uuid
from enum import Enum
from typing import Callable, Optional

import structlog
import websocket

from src.errors import TransportError
from src.models import ORDER_EVENT_KIND

logger = structlog.get_logger()

EventHandler = Callable[[dict, str], None]


class RelayHealth(str, Enum):
    IDLE = "idle"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    FAILED = "failed"
    STOPPED = "stopped"


class RelayConnection:
    """Keeps one subscription open against one relay.

    The socket is read on a dedicated thread and every EVENT payload is
    handed to ``on_event`` exactly as received. Validation and dedup are
    left to the caller. The connection retries forever with capped
    exponential backoff until ``stop()`` is called.
    """

    def __init__(
        self,
        url: str,
        on_event: EventHandler,
        backoff_initial: float = 1.0,
        backoff_max: float = 60.0,
        connect_timeout: float = 10.0,
        idle_timeout: float = 120.0,
        lookback_minutes: Optional[int] = 60,
        connect: Callable = websocket.create_connection,
    ):
        self.url = url
        self.on_event = on_event
        self.backoff_initial = backoff_initial
        self.backoff_max = backoff_max
        self.connect_timeout = connect_timeout
        self.idle_timeout = idle_timeout
        self.lookback_minutes = lookback_minutes
        self._connect = connect

        self.subscription_id = f"orders-{uuid.uuid4().hex[:12]}"
        self.health = RelayHealth.IDLE
        self._attempt = 0
        self._stop = threading.Event()
        self._ws = None
        self._ws_lock = threading.Lock()
        self._thread: Optional[threading.Thread] = None

        # Stats
        self.events_received = 0
        self.frames_dropped = 0
        self.reconnects = 0

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def subscription_filter(self) -> dict:
        filt: dict = {"kinds": [ORDER_EVENT_KIND]}
        if self.lookback_minutes:
            filt["since"] = int(time.time()) - self.lookback_minutes * 60
        return filt

    def next_delay(self, attempt: int) -> float:
        """Backoff before retry number ``attempt`` (0-based), jittered and capped."""
        delay = min(self.backoff_max, self.backoff_initial * (2 ** attempt))
        return delay * random.uniform(0.8, 1.0)

    def start(self):
        """Start the connection thread."""
        if self.is_running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name=f"relay:{self.url}", daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 5.0):
        """Close the socket, unblocking the reader, and wait for the thread."""
        self._stop.set()
        self._close_socket()
        if self._thread is not None:
            self._thread.join(timeout)
        self.health = RelayHealth.STOPPED
        logger.info("relay_stopped", relay=self.url, events=self.events_received)

    def _close_socket(self):
        with self._ws_lock:
            ws, self._ws = self._ws, None
        if ws is None:
            return
        try:
            ws.close()
        except (websocket.WebSocketException, OSError) as e:
            logger.debug("relay_close_failed", relay=self.url, error=str(e))

    def _run(self):
        while not self._stop.is_set():
            self.health = RelayHealth.RECONNECTING
            try:
                self._session()
            except (websocket.WebSocketException, OSError, TransportError) as e:
                if self._stop.is_set():
                    break
                logger.warning("relay_transport_error", relay=self.url, error=str(e))
            except Exception as e:
                if self._stop.is_set():
                    break
                logger.error("relay_unexpected_error", relay=self.url, error=str(e), exc_info=True)
            finally:
                self._close_socket()

            if self._stop.is_set():
                break

            self.health = RelayHealth.FAILED
            delay = self.next_delay(self._attempt)
            self._attempt += 1
            self.reconnects += 1
            logger.info("relay_reconnect_scheduled", relay=self.url, delay=round(delay, 2), attempt=self._attempt)
            self._stop.wait(delay)

    def _session(self):
        """Run one connection until it drops or the relay closes the subscription."""
        ws = self._connect(self.url, timeout=self.connect_timeout)
        with self._ws_lock:
            self._ws = ws
        if self._stop.is_set():
            return

        ws.send(json.dumps(["REQ", self.subscription_id, self.subscription_filter()], separators=(",", ":")))
        ws.settimeout(self.idle_timeout)
        self.health = RelayHealth.CONNECTED
        self._attempt = 0
        logger.info("relay_connected", relay=self.url, subscription=self.subscription_id)

        awaiting_pong = False
        while not self._stop.is_set():
            try:
                opcode, data = ws.recv_data(control_frame=True)
            except websocket.WebSocketTimeoutException:
                # Quiet relay: ping once, reconnect if nothing comes back
                if awaiting_pong:
                    raise TransportError(f"no pong within {self.idle_timeout}s")
                ws.ping()
                awaiting_pong = True
                continue

            awaiting_pong = False
            if opcode == websocket.ABNF.OPCODE_CLOSE:
                raise TransportError("connection closed by relay")
            if opcode not in (websocket.ABNF.OPCODE_TEXT, websocket.ABNF.OPCODE_BINARY):
                continue
            if not self.handle_frame(data):
                return

    def handle_frame(self, raw) -> bool:
        """Process one relay frame. Returns False when the relay ended the subscription."""
        try:
            message = json.loads(raw)
        except (TypeError, ValueError):
            self._drop_frame("invalid_json", raw)
            return True

        if not isinstance(message, list) or not message or not isinstance(message[0], str):
            self._drop_frame("not_a_relay_message", raw)
            return True

        message_type = message[0]

        if message_type == "EVENT":
            if len(message) < 3 or not isinstance(message[2], dict):
                self._drop_frame("event_without_payload", raw)
                return True
            self.events_received += 1
            try:
                self.on_event(message[2], self.url)
            except Exception as e:
                logger.error("relay_event_handler_failed", relay=self.url, error=str(e), exc_info=True)
        elif message_type == "EOSE":
            logger.debug("relay_end_of_stored_events", relay=self.url)
        elif message_type == "NOTICE":
            logger.info("relay_notice", relay=self.url, notice=str(message[1:])[:200])
        elif message_type == "CLOSED":
            logger.warning("relay_subscription_closed", relay=self.url, reason=str(message[2:])[:200])
            return False
        else:
            logger.debug("relay_message_ignored", relay=self.url, type=message_type)
        return True

    def _drop_frame(self, reason: str, raw):
        self.frames_dropped += 1
        logger.warning("relay_frame_dropped", relay=self.url, reason=reason, frame=str(raw)[:120])
