#!/usr/bin/env python3
"""
Shepherd API Server - HTTP surface for dashboards and scripts.

Thin forwarding layer over FleetController: fleet reads come from the
registry, agent commands are relayed to the agent with its own body and
status code.

Endpoints:
    GET    /api/fleet                  - Fleet status (agents, summary, duplicates)
    POST   /api/agents                 - Register an agent {address}
    DELETE /api/agents/<ref>           - Remove an agent
    POST   /api/agents/scan            - Subnet discovery
    POST   /api/refresh                - Run one reconciliation cycle now
    GET    /api/agent/status?agent=REF - Live status from one agent
    POST   /api/agent/<command>        - Relay a command {agent, ...}

Errors: 400 bad request, 404 unknown agent, 502 agent unreachable.
"""

import logging
from typing import Any, Dict, Optional

from flask import Flask, jsonify, request

from shepherd.client import AgentDecodeError, AgentHttpError, AgentUnavailable
from shepherd.controller import FleetController, InvalidCommand, get_controller
from shepherd.registry import RegistrationError, UnknownAgent

logger = logging.getLogger("shepherd.api")


def _error(message: str, status: int, **extra):
    return jsonify({"success": False, "error": message, **extra}), status


def create_app(controller: Optional[FleetController] = None) -> Flask:
    """Build the Flask app around a controller (default: the singleton)."""
    app = Flask(__name__)
    app.config["controller"] = controller or get_controller()

    def ctl() -> FleetController:
        return app.config["controller"]

    # Enable CORS manually (without flask-cors dependency)
    @app.after_request
    def after_request(response):
        response.headers.add('Access-Control-Allow-Origin', '*')
        response.headers.add('Access-Control-Allow-Headers', 'Content-Type,Authorization')
        response.headers.add('Access-Control-Allow-Methods', 'GET,POST,DELETE,OPTIONS')
        return response

    @app.errorhandler(UnknownAgent)
    def unknown_agent(e):
        return _error(str(e), 404)

    @app.errorhandler(InvalidCommand)
    def invalid_command(e):
        return _error(str(e), 400)

    @app.errorhandler(AgentUnavailable)
    def agent_unavailable(e):
        logger.warning(str(e))
        return _error(f"Agent unreachable: {e.address}", 502)

    @app.errorhandler(AgentDecodeError)
    def agent_decode_error(e):
        return _error(f"Invalid response from agent: {e}", 502)

    @app.errorhandler(AgentHttpError)
    def agent_http_error(e):
        # Relay the agent's own answer
        if e.payload is not None:
            return jsonify(e.payload), e.status
        return _error(e.body or str(e), e.status)

    def _body() -> Dict[str, Any]:
        data = request.get_json(silent=True)
        return data if isinstance(data, dict) else {}

    @app.route('/api/fleet')
    def api_fleet():
        return jsonify(ctl().fleet_status().to_dict())

    @app.route('/api/agents', methods=['POST'])
    def api_add_agent():
        address = _body().get("address")
        if not isinstance(address, str) or not address.strip():
            return _error("address is required", 400)
        try:
            record = ctl().add_agent(address)
        except ValueError as e:
            return _error(str(e), 400)
        except RegistrationError as e:
            return _error(str(e), 502)
        return jsonify({"success": True, "agent": record.to_dict()})

    @app.route('/api/agents/<path:ref>', methods=['DELETE'])
    def api_remove_agent(ref):
        record = ctl().remove_agent(ref)
        return jsonify({"success": True, "agent": record.to_dict()})

    @app.route('/api/agents/scan', methods=['POST'])
    def api_scan():
        found = ctl().scan()
        return jsonify({"success": True, "found": [r.to_dict() for r in found]})

    @app.route('/api/refresh', methods=['POST'])
    def api_refresh():
        report = ctl().refresh()
        return jsonify({
            "success": True,
            "skipped": report is None,
            "cycle": report.to_dict() if report else None,
            "fleet": ctl().fleet_status().to_dict(),
        })

    @app.route('/api/agent/status')
    def api_agent_status():
        ref = request.args.get("agent")
        if not ref:
            return _error("agent is required", 400)
        return jsonify({"success": True, "data": ctl().agent_status(ref)})

    @app.route('/api/agent/<command>', methods=['POST'])
    def api_agent_command(command):
        body = _body()
        ref = body.pop("agent", None)
        if not ref:
            return _error("agent is required", 400)
        return jsonify(ctl().dispatch(str(ref), command, body))

    return app


if __name__ == "__main__":
    import argparse

    from shepherd.config import load_controller_config

    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    parser = argparse.ArgumentParser(description="Shepherd API Server")
    parser.add_argument("--config", type=str, help="Path to controller config file")
    parser.add_argument("--host", type=str, help="Address to bind to")
    parser.add_argument("--port", type=int, help="Port to bind to")
    args = parser.parse_args()

    config = load_controller_config(args.config)
    controller = FleetController(config=config)
    controller.start()

    app = create_app(controller)
    host = args.host or config.api_host
    port = args.port or config.api_port
    logger.info(f"Shepherd API starting on {host}:{port}")
    try:
        app.run(host=host, port=port, threaded=True)
    finally:
        controller.stop()
