"""Serve the costlens plugin protocol from a Python script.

A plugin is any executable that reads one JSON request per line on stdin and
writes one JSON response per line on stdout. This module handles the framing
so a plugin only supplies handlers::

    from costlens.pluginsdk import serve

    def get_metadata(params):
        return {"name": "demo", "version": "0.1.0", "spec_version": "1.2.0", "providers": ["aws"]}

    def get_costs(params):
        return {"results": [{"resource_id": r["id"], "amount": 1.0} for r in params["resources"]]}

    if __name__ == "__main__":
        serve({"get_metadata": get_metadata, "get_costs": get_costs})

Methods without a handler answer with the ``unimplemented`` error code.
"""
import json
import sys
from typing import Any, Callable, Dict, Mapping, Optional, TextIO

Handler = Callable[[Dict[str, Any]], Any]

ERROR_UNIMPLEMENTED = "unimplemented"
ERROR_INVALID_REQUEST = "invalid_request"
ERROR_INTERNAL = "internal"


class PluginError(Exception):
    """Raised by a handler to answer with a specific error code."""

    def __init__(self, code: str, message: str):
        super().__init__(message)
        self.code = code
        self.message = message


def handle_line(handlers: Mapping[str, Handler], line: str) -> Optional[Dict[str, Any]]:
    if not line.strip():
        return None
    try:
        request = json.loads(line)
    except ValueError as exc:
        return {"id": None, "error": {"code": ERROR_INVALID_REQUEST, "message": f"malformed JSON: {exc}"}}
    if not isinstance(request, dict):
        return {"id": None, "error": {"code": ERROR_INVALID_REQUEST, "message": "request must be an object"}}

    request_id = request.get("id")
    method = str(request.get("method") or "")
    params = request.get("params")
    handler = handlers.get(method)
    if handler is None:
        return {"id": request_id, "error": {"code": ERROR_UNIMPLEMENTED, "message": f"method {method} not implemented"}}
    try:
        result = handler(params if isinstance(params, dict) else {})
    except PluginError as exc:
        return {"id": request_id, "error": {"code": exc.code, "message": exc.message}}
    except Exception as exc:
        return {"id": request_id, "error": {"code": ERROR_INTERNAL, "message": str(exc)}}
    return {"id": request_id, "result": result}


def serve(
    handlers: Mapping[str, Handler],
    stdin: Optional[TextIO] = None,
    stdout: Optional[TextIO] = None,
) -> None:
    """Answer requests until stdin closes."""
    reader = stdin or sys.stdin
    writer = stdout or sys.stdout
    for line in reader:
        response = handle_line(handlers, line)
        if response is None:
            continue
        writer.write(json.dumps(response, ensure_ascii=True) + "\n")
        writer.flush()
