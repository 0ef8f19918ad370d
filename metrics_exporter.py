# metrics_exporter.py
import json
import logging
from http.server import BaseHTTPRequestHandler, HTTPServer
from typing import Dict, Any, Type

from registry_client_lib import MetricsStore

logger = logging.getLogger(__name__)

METRIC_PREFIX = "registry_client"


def generate_prometheus_metrics(metrics_store_instance: MetricsStore) -> str:
    """Erzeugt die Metriken des Registry-Clients im Prometheus-Textformat."""
    metrics_data = metrics_store_instance.get_metrics_data()
    output = []

    counters = [
        ("successful_registrations_total", "Total number of successful registrations."),
        ("registration_errors_total", "Total number of failed registrations."),
        ("heartbeats_total", "Total number of successful heartbeats."),
        ("heartbeat_errors_total", "Total number of failed heartbeats."),
    ]
    for key, help_text in counters:
        name = f"{METRIC_PREFIX}_{key}"
        output.append(f"# HELP {name} {help_text}")
        output.append(f"# TYPE {name} counter")
        output.append(f"{name} {metrics_data[key]}")

    name = f"{METRIC_PREFIX}_service_registered"
    output.append(f"# HELP {name} Status of service registration (1 if registered, 0 otherwise).")
    output.append(f"# TYPE {name} gauge")
    for service_id, status in metrics_data["service_registered_status"].items():
        output.append(f"{name}{{service_id=\"{service_id}\"}} {status}")

    return "\n".join(output) + "\n"


def create_metrics_handler(metrics_store_instance: MetricsStore, app_config: Dict[str, Any]) -> Type[BaseHTTPRequestHandler]:
    """
    Fabrikfunktion für eine Handler-Klasse, die /metrics und /info
    für die übergebene MetricsStore-Instanz ausliefert.
    """
    if metrics_store_instance is None:
        raise ValueError("metrics_store_instance darf nicht None sein")
    if app_config is None:
        raise ValueError("app_config darf nicht None sein")

    class CustomMetricsHandler(BaseHTTPRequestHandler):
        def log_message(self, format: str, *args: Any) -> None:
            pass

        def do_GET(self) -> None:
            try:
                if self.path == '/metrics':
                    body = generate_prometheus_metrics(metrics_store_instance).encode('utf-8')
                    content_type = 'text/plain; version=0.0.4; charset=utf-8'
                elif self.path == '/info':
                    body = json.dumps(app_config, indent=2).encode('utf-8')
                    content_type = 'application/json; charset=utf-8'
                else:
                    self.send_response(404)
                    self.end_headers()
                    self.wfile.write(b'Not Found')
                    return
            except Exception as e:
                logger.exception(f"Fehler beim Verarbeiten der Anfrage {self.path}: {e}")
                self.send_response(500)
                self.end_headers()
                self.wfile.write(b'Internal Server Error')
                return

            self.send_response(200)
            self.send_header('Content-type', content_type)
            self.send_header('Content-Length', str(len(body)))
            self.end_headers()
            self.wfile.write(body)

    return CustomMetricsHandler


def create_metrics_web_server(metrics_store_instance: MetricsStore, app_config: Dict[str, Any], host: str, port: int) -> HTTPServer:
    handler_class = create_metrics_handler(metrics_store_instance, app_config)
    return HTTPServer((host, port), handler_class)


def run_metrics_web_server(metrics_store_instance: MetricsStore, app_config: Dict[str, Any], host: str, port: int) -> None:
    """
    Startet den Metrics-Webserver und blockiert bis zum Herunterfahren.
    Typischerweise in einem eigenen Thread aufgerufen.
    """
    httpd = create_metrics_web_server(metrics_store_instance, app_config, host, port)
    logger.info(f"Metrics web server running on http://{host}:{port}/metrics and http://{host}:{port}/info")
    try:
        httpd.serve_forever()
    except KeyboardInterrupt:
        logger.info("Metrics web server shutdown signal empfangen.")
    finally:
        httpd.server_close()
        logger.info("Metrics web server stopped.")
