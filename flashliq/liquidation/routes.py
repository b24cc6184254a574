"""Module for handling API routes"""

from decimal import Decimal, InvalidOperation

from flask import Blueprint, jsonify, make_response, request

from .bot_manager import ChainManager
from .logging_config import setup_logger

logger = setup_logger()

liquidation = Blueprint("liquidation", __name__)


def start_monitor(chain_ids=None, notify=True, execute_liquidation=True):
    """Start the pipeline for the given chains, defaults to Ethereum mainnet if none specified"""
    if chain_ids is None:
        chain_ids = [1]

    chain_manager = ChainManager(chain_ids, notify=notify, execute_liquidation=execute_liquidation)

    # Store on module level for route access before app context is available
    start_monitor._chain_manager = chain_manager

    chain_manager.start()

    return chain_manager


def _get_chain_manager():
    """Get the chain manager instance."""
    return getattr(start_monitor, "_chain_manager", None)


def _optional_chain_id():
    chain_id = request.args.get("chainId")
    return int(chain_id) if chain_id is not None else None


@liquidation.route("/positions", methods=["GET"])
def get_positions():
    chain_manager = _get_chain_manager()
    if not chain_manager:
        return jsonify({"error": "Pipeline not initialized"}), 500

    try:
        chain_id = _optional_chain_id()
        min_hf = request.args.get("minHf")
        max_hf = request.args.get("maxHf")
        low = Decimal(min_hf) if min_hf is not None else Decimal(0)
        high = Decimal(max_hf) if max_hf is not None else Decimal("Infinity")
        positions = sorted(
            (p for p in chain_manager.store.all_positions(chain_id) if low <= p.health_factor <= high),
            key=lambda p: p.health_factor,
        )
    except (ValueError, InvalidOperation):
        return jsonify({"error": "Invalid chainId, minHf or maxHf"}), 400

    logger.info("API: Getting %s positions for chain %s", len(positions), chain_id)
    return make_response(jsonify([p.to_dict() for p in positions]))


@liquidation.route("/connections", methods=["GET"])
def get_connections():
    chain_manager = _get_chain_manager()
    if not chain_manager:
        return jsonify({"error": "Pipeline not initialized"}), 500

    statuses = chain_manager.registry.statuses()
    return make_response(jsonify({str(chain_id): state.to_dict() for chain_id, state in statuses.items()}))


@liquidation.route("/attempts", methods=["GET"])
def get_attempts():
    chain_manager = _get_chain_manager()
    if not chain_manager:
        return jsonify({"error": "Pipeline not initialized"}), 500

    try:
        chain_id = _optional_chain_id()
    except ValueError:
        return jsonify({"error": "Invalid chainId"}), 400

    attempts = []
    for orchestrator_chain_id, orchestrator in chain_manager.orchestrators.items():
        if chain_id is None or chain_id == orchestrator_chain_id:
            attempts.extend(orchestrator.attempts())
    attempts.sort(key=lambda a: a.submitted_at, reverse=True)
    return make_response(jsonify([a.to_dict() for a in attempts]))


@liquidation.route("/activity", methods=["GET"])
def get_activity():
    chain_manager = _get_chain_manager()
    if not chain_manager:
        return jsonify({"error": "Pipeline not initialized"}), 500

    try:
        chain_id = _optional_chain_id()
        limit = int(request.args.get("limit", 100))
    except ValueError:
        return jsonify({"error": "Invalid chainId or limit"}), 400

    events = chain_manager.activity.recent(limit=limit, chain_id=chain_id, kind=request.args.get("kind"))
    return make_response(jsonify([e.to_dict() for e in events]))
