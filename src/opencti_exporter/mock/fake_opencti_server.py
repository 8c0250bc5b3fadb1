"""
Fake OpenCTI for testing without a real platform. Answers /health and
the stixCyberObservables GraphQL query, nothing else.

    python -m opencti_exporter.mock.fake_opencti_server
    OPENCTI_TOKEN=test opencti-exporter --url http://localhost:4000
"""

from __future__ import annotations

import json
import threading
import time
from dataclasses import dataclass, field
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import List, Type


SAMPLE_OBSERVABLES = [
    {
        "id": "585cf60b-bdc3-45c5-a909-a9dcd0434db7",
        "entity_type": "Email-Addr",
        "observable_value": "test@test.com",
        "created_at": "2025-01-16T15:45:55.316Z",
        "updated_at": "2025-01-16T15:45:55.316Z",
    },
    {
        "id": "40dd1bb7-0474-4b6f-b2ce-81bf6e692a7a",
        "entity_type": "Hostname",
        "observable_value": "test.xyz",
        "created_at": "2025-01-15T16:17:05.211Z",
        "updated_at": "2025-01-16T15:47:03.324Z",
    },
]


@dataclass
class FakeOpenCTIState:
    """What the fake server reports. Tests flip these between requests."""

    healthy: bool = True
    observables: List[dict] = field(default_factory=lambda: [dict(o) for o in SAMPLE_OBSERVABLES])
    graphql_errors: List[str] = field(default_factory=list)
    # Seconds between 3-byte chunks of every response body; 0 sends it whole
    trickle_delay: float = 0.0
    requests: List[str] = field(default_factory=list)
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def list_observables(self, first: int, order_by: str, order_mode: str) -> List[dict]:
        # ISO-8601 strings in UTC sort the same as the instants they name
        ordered = sorted(self.observables, key=lambda o: o.get(order_by) or "",
                         reverse=(order_mode == "desc"))
        return ordered[:first] if first is not None else ordered


def make_handler(state: FakeOpenCTIState) -> Type[BaseHTTPRequestHandler]:

    class _FakeOpenCTIHandler(BaseHTTPRequestHandler):
        def do_GET(self):
            path = self.path.split("?", 1)[0]
            with state.lock:
                state.requests.append(f"GET {path}")
                healthy = state.healthy

            if path != "/health":
                self._send_json(404, {"error": "not found"})
            elif healthy:
                self._send_json(200, {"status": "success"})
            else:
                self._send_json(502, {"status": "error"})

        def do_POST(self):
            path = self.path.split("?", 1)[0]
            length = int(self.headers.get("Content-Length") or 0)
            raw = self.rfile.read(length) if length else b""

            with state.lock:
                state.requests.append(f"POST {path}")

            if path != "/graphql":
                self._send_json(404, {"error": "not found"})
                return

            if not self.headers.get("Authorization", "").startswith("Bearer "):
                self._send_json(401, {"errors": [{"message": "You must be logged in to do this."}]})
                return

            try:
                variables = json.loads(raw or b"{}").get("variables") or {}
            except ValueError:
                self._send_json(400, {"errors": [{"message": "Invalid JSON body"}]})
                return

            with state.lock:
                if state.graphql_errors:
                    self._send_json(200, {"errors": [{"message": m} for m in state.graphql_errors]})
                    return
                nodes = state.list_observables(
                    variables.get("first"),
                    variables.get("orderBy") or "created_at",
                    variables.get("orderMode") or "asc",
                )

            edges = [{"node": node, "cursor": node.get("id", "")} for node in nodes]
            self._send_json(200, {
                "data": {
                    "stixCyberObservables": {
                        "edges": edges,
                        "pageInfo": {"hasNextPage": False, "globalCount": len(edges)},
                    }
                }
            })

        def _send_json(self, status: int, payload: dict):
            body = json.dumps(payload).encode()
            self.send_response(status)
            self.send_header("Content-Type", "application/json")
            self.send_header("Content-Length", str(len(body)))
            self.end_headers()

            if not state.trickle_delay:
                self.wfile.write(body)
                return
            try:
                for i in range(0, len(body), 3):
                    self.wfile.write(body[i:i + 3])
                    self.wfile.flush()
                    time.sleep(state.trickle_delay)
            except (BrokenPipeError, ConnectionResetError):
                pass  # client gave up

        def log_message(self, format, *args):
            pass  # Suppress request logging noise

    return _FakeOpenCTIHandler


def start_fake_server(state: FakeOpenCTIState, host: str = "127.0.0.1", port: int = 0) -> ThreadingHTTPServer:
    """Start the fake in a daemon thread. Port 0 picks a free one."""
    server = ThreadingHTTPServer((host, port), make_handler(state))
    server.daemon_threads = True
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    return server


def run_fake_server(host: str = "127.0.0.1", port: int = 4000):
    server = ThreadingHTTPServer((host, port), make_handler(FakeOpenCTIState()))
    print(f"Fake OpenCTI running at http://{host}:{port} (/health, /graphql)")
    print("Press Ctrl+C to stop.\n")
    try:
        server.serve_forever()
    except KeyboardInterrupt:
        pass
    server.server_close()
    print("\nServer stopped.")


if __name__ == "__main__":
    run_fake_server()
