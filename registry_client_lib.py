# registry_client_lib.py
import logging
import os
import threading
from typing import Optional, Tuple

import requests
from pydantic import ValidationError

from registry_models import ClientConfig, Registrant, Route

AUTH_HEADER = "X-Registry-Token"
API_PREFIX = "/api/v1"

DEFAULT_TIMEOUT = 3.0
# Kleinere Timeouts würden jeden Aufruf scheitern lassen
MIN_TIMEOUT = 0.01

DEFAULT_REGISTRY_URL = "http://localhost:8080"


class RegistryError(Exception):
    """Basisklasse aller Fehler des Registry-Clients."""


class RequestBuildError(RegistryError):
    """Die Anfrage konnte nicht erstellt werden."""


class RegistryTransportError(RegistryError):
    """Die Anfrage konnte nicht ausgeführt werden (DNS, Verbindung, Timeout)."""


class StatusCodeError(RegistryError):
    """Die Registry hat mit einem Status >= 400 geantwortet."""

    def __init__(self, status_code: int):
        super().__init__(f"received non-success status code ({status_code})")
        self.status_code = status_code


class DecodeError(RegistryError):
    """Die Antwort ließ sich nicht als Registrant lesen."""


class MetricsStore:
    """
    Zähler für Registrierungen und Heartbeats, geteilt zwischen Client
    und Ping-Thread. Der Gauge je Kennung ist 1 nach erfolgreicher
    Registrierung und 0 nach Deregistrierung oder Fehlschlag.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self.successful_registrations_total = 0
        self.registration_errors_total = 0
        self.heartbeats_total = 0
        self.heartbeat_errors_total = 0
        self.service_registered_status = {}

    def record_registration(self, service_id: str, ok: bool):
        with self._lock:
            if ok:
                self.successful_registrations_total += 1
            else:
                self.registration_errors_total += 1
            self.service_registered_status[service_id] = 1 if ok else 0

    def record_deregistration(self, service_id: str):
        with self._lock:
            self.service_registered_status[service_id] = 0

    def record_heartbeat(self, ok: bool):
        with self._lock:
            if ok:
                self.heartbeats_total += 1
            else:
                self.heartbeat_errors_total += 1

    def get_metrics_data(self):
        with self._lock:
            return {
                "successful_registrations_total": self.successful_registrations_total,
                "registration_errors_total": self.registration_errors_total,
                "heartbeats_total": self.heartbeats_total,
                "heartbeat_errors_total": self.heartbeat_errors_total,
                "service_registered_status": self.service_registered_status.copy()
            }


class Client:
    """
    Client für eine Service-Registry mit HTTP+JSON-API.

    Eine Instanz steht für genau eine Kennung (``id``), mit der sie sich
    registriert und Heartbeats sendet. Abfragen anderer Kennungen sind möglich.
    Kennungen werden unverändert in die URL übernommen und müssen daher
    URL-sicher sein (z.B. alphanumerisch mit ``-``/``_``).
    """

    def __init__(self, base_url: str, token: str, id: str,
                 config: Optional[ClientConfig] = None,
                 metrics_store: Optional[MetricsStore] = None,
                 logger: Optional[logging.Logger] = None):
        if base_url.endswith("/"):
            base_url = base_url[:-1]
        self._base_url = base_url
        self._auth_token = token
        self._id = id
        self._timeout = DEFAULT_TIMEOUT
        self._metrics_store = metrics_store
        self.logger = logger or logging.getLogger(__name__)

        self._session = requests.Session()
        if config is not None:
            if config.timeout is not None:
                if config.timeout > MIN_TIMEOUT:
                    self._timeout = config.timeout
                else:
                    self.logger.debug(f"Timeout {config.timeout}s liegt unter {MIN_TIMEOUT}s, verwende {DEFAULT_TIMEOUT}s.")
            if config.transport is not None:
                self._session.mount("http://", config.transport)
                self._session.mount("https://", config.transport)

    @property
    def base_url(self) -> str:
        return self._base_url

    @property
    def id(self) -> str:
        return self._id

    @property
    def timeout(self) -> float:
        return self._timeout

    def describe(self) -> dict:
        """Konfiguration ohne Token, z.B. für den /info-Endpunkt."""
        return {"baseUrl": self._base_url, "id": self._id, "timeout": self._timeout}

    def close(self):
        self._session.close()

    def register(self, address: str) -> None:
        """Registriert die eigene Kennung mit der angegebenen öffentlichen Adresse."""
        reg = Registrant(id=self._id, address=address)
        self.logger.info(f"Versuche Registrierung von {self._id} mit Adresse {address}")
        try:
            self._send("POST", self._url(Route.REGISTER), reg)
        except RegistryError as e:
            self.logger.error(f"Fehler bei der Registrierung von {self._id}: {e}")
            if self._metrics_store:
                self._metrics_store.record_registration(self._id, False)
            raise
        self.logger.info(f"{self._id} erfolgreich registriert.")
        if self._metrics_store:
            self._metrics_store.record_registration(self._id, True)

    def deregister(self) -> None:
        """Entfernt die eigene Kennung aus der Registry (leere Adresse)."""
        reg = Registrant(id=self._id, address="")
        self.logger.info(f"Versuche Deregistrierung von {self._id}")
        try:
            self._send("DELETE", self._url(Route.DEREGISTER), reg)
        except RegistryError as e:
            self.logger.warning(f"Fehler bei der Deregistrierung von {self._id}: {e}")
            raise
        self.logger.info(f"{self._id} erfolgreich deregistriert.")
        if self._metrics_store:
            self._metrics_store.record_deregistration(self._id)

    def ping(self) -> None:
        url = f"{self._url(Route.PING)}?id={self._id}"
        try:
            self._send("PUT", url)
        except RegistryError:
            if self._metrics_store:
                self._metrics_store.record_heartbeat(False)
            raise
        if self._metrics_store:
            self._metrics_store.record_heartbeat(True)

    def query(self, id: str) -> Registrant:
        """Fragt die Registry nach dem Eintrag für ``id``."""
        url = self._url(Route.QUERY, id=id)
        body = self._send("GET", url)
        try:
            return Registrant.model_validate_json(body)
        except ValidationError as e:
            raise DecodeError(f"could not decode JSON: {e}") from e

    def start_ping(self, stop_event: threading.Event, interval: float) -> None:
        """
        Sendet im Abstand von ``interval`` Sekunden Heartbeats, bis ``stop_event``
        gesetzt wird. Sollte in einem eigenen Thread laufen (siehe start_ping_thread).
        Fehlgeschlagene Heartbeats werden geloggt, die Schleife läuft weiter.
        """
        _check_interval(interval)
        self.logger.info(f"Starte Ping-Schleife für {self._id} (Intervall {interval}s).")
        while not stop_event.wait(timeout=interval):
            try:
                self.ping()
                self.logger.debug(f"Heartbeat für {self._id} erfolgreich gesendet.")
            except RegistryError as e:
                self.logger.warning(f"ping error: {e}")
            except Exception as e:
                self.logger.exception(f"Unerwarteter Fehler beim Heartbeat: {e}")
        self.logger.info("Stopp-Signal empfangen. Beende Ping-Schleife.")

    def _url(self, route: Route, **params) -> str:
        return self._base_url + API_PREFIX + route.value.format(**params)

    def _send(self, method: str, url: str, payload: Optional[Registrant] = None) -> bytes:
        json_body = payload.model_dump() if payload is not None else None
        try:
            request = self._session.prepare_request(
                requests.Request(method, url, json=json_body, headers={AUTH_HEADER: self._auth_token}))
        except (requests.exceptions.RequestException, ValueError) as e:
            raise RequestBuildError(f"could not create request: {e}") from e

        try:
            settings = self._session.merge_environment_settings(request.url, {}, False, None, None)
            response = self._session.send(request, timeout=self._timeout, **settings)
        except requests.exceptions.RequestException as e:
            raise RegistryTransportError(f"could not execute request: {e}") from e

        with response:
            if response.status_code >= 400:
                raise StatusCodeError(response.status_code)
            return response.content


def _check_interval(interval):
    if interval is None or interval <= 0:
        raise ValueError(f"Ping-Intervall muss positiv sein: {interval!r}")


def start_ping_thread(client: Client, interval: float,
                      stop_event: Optional[threading.Event] = None) -> Tuple[threading.Thread, threading.Event]:
    """
    Startet client.start_ping in einem Daemon-Thread.
    Gibt den Thread und das Event zurück, mit dem die Schleife beendet wird.
    """
    _check_interval(interval)
    if stop_event is None:
        stop_event = threading.Event()
    thread = threading.Thread(target=client.start_ping, args=(stop_event, interval),
                              name=f"ping-{client.id}", daemon=True)
    thread.start()
    return thread, stop_event


def client_from_env(config: Optional[ClientConfig] = None,
                    metrics_store: Optional[MetricsStore] = None,
                    logger: Optional[logging.Logger] = None) -> Client:
    """
    Erstellt einen Client aus REGISTRY_URL, REGISTRY_TOKEN, REGISTRY_ID
    und optional REGISTRY_TIMEOUT (Sekunden).
    """
    base_url = os.getenv("REGISTRY_URL", DEFAULT_REGISTRY_URL)
    token = os.getenv("REGISTRY_TOKEN", "")
    service_id = os.getenv("REGISTRY_ID")
    if not service_id:
        raise ValueError("REGISTRY_ID ist nicht gesetzt")

    timeout = os.getenv("REGISTRY_TIMEOUT")
    if timeout:
        try:
            timeout_value = float(timeout)
        except ValueError:
            raise ValueError(f"REGISTRY_TIMEOUT ist keine Zahl: {timeout!r}") from None
        if config is None:
            config = ClientConfig(timeout=timeout_value)
        else:
            config = config.model_copy(update={"timeout": timeout_value})

    return Client(base_url, token, service_id, config=config,
                  metrics_store=metrics_store, logger=logger)
