"""
旅行プランナーのHTTP API（Blueprint）。
HTTP API for the travel planner (Blueprint).

計画セッションは `session_id` Cookie、認証済みユーザーは前段の認証層が付与する
`X-User-Id` ヘッダーで識別します。
Planning sessions are identified by the `session_id` cookie and authenticated users by
the `X-User-Id` header set by the fronting auth layer.
"""

import datetime
import json
import logging
import queue
import uuid
from typing import Any, Dict, Optional, Tuple, Union

from flask import Blueprint, Response, jsonify, make_response, request
from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError

from sagascout import (
    destination_resolver,
    generation,
    itinerary_generator,
    locations,
    persistence,
    redis_client,
    security,
)
from sagascout.constants import EVENT_STREAM_KEEPALIVE_SECONDS
from sagascout.errors import BackendFailure, ParseFailure, PersistenceFailure
from sagascout.preferences import PreferenceCollector, clean_option, fingerprint
from sagascout.propagator import ItineraryPropagator
from sagascout.schemas import Destination, Itinerary, destination_key
from sagascout.views import ScheduleView

logger = logging.getLogger(__name__)

# Blueprintの定義: 旅行プランナーのAPIルートを管理
# Blueprint holding the planner API routes
planner_bp = Blueprint("planner", __name__, url_prefix="/api")

ResponseOrTuple = Union[Response, Tuple[Response, int]]

AI_ERROR_MESSAGE = "We couldn't reach the travel assistant. Please try again."


def error_response(message: str, status: int = 400, **extra: Any) -> ResponseOrTuple:
    """エラーレスポンスを返すヘルパー関数 / Build an error response."""
    body: Dict[str, Any] = {"error": message}
    body.update(extra)
    return jsonify(body), status


def _format_sse(data: Dict[str, Any]) -> str:
    return f"data: {json.dumps(data, default=str)}\n\n"


def _session_id() -> Optional[str]:
    return request.cookies.get("session_id")


def _user_id() -> Optional[str]:
    return clean_option(request.headers.get("X-User-Id"), max_length=64)


def _json_body() -> Dict[str, Any]:
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def _guard(require_user: bool = False) -> Tuple[Optional[str], Optional[ResponseOrTuple]]:
    """
    CSRF・セッション・ユーザーの前提条件を確認する
    Check CSRF, session and (optionally) user preconditions.
    """
    if not security.is_csrf_valid(request):
        return None, error_response("Invalid request origin.", status=403)
    if require_user:
        if not _user_id():
            return None, error_response("Sign in to manage saved itineraries.", status=401)
        return _session_id(), None
    session_id = _session_id()
    if not session_id:
        return None, error_response("Planning session is missing. Please reload the page.", status=400)
    return session_id, None


def _load_profile(user_id: Optional[str]) -> Optional[Dict[str, Any]]:
    try:
        return persistence.get_profile(user_id)
    except SQLAlchemyError as e:
        logger.error("Profile lookup failed for %s: %s", user_id, e)
        return None


def _collector(session_id: str) -> PreferenceCollector:
    return PreferenceCollector.load(session_id, profile=_load_profile(_user_id()))


def _selected_destination(session_id: str) -> Optional[Destination]:
    data = redis_client.get_selected_destination(session_id)
    if not data:
        return None
    try:
        return Destination.model_validate(data)
    except ValidationError as e:
        logger.warning("Ignoring malformed destination snapshot for %s: %s", session_id, e)
        return None


def _planner_state(collector: PreferenceCollector) -> Dict[str, Any]:
    state = collector.state()
    state["destinations"] = redis_client.get_candidate_destinations(collector.session_id)
    state["selected_destination"] = redis_client.get_selected_destination(collector.session_id)
    return state


def _search(collector: PreferenceCollector) -> Dict[str, Any]:
    """
    候補地を検索し、選択済みの目的地と旅程を消去する
    Search destinations; a previously selected destination and its itinerary are cleared.
    """
    destinations = destination_resolver.resolve(collector.preferences, user_id=_user_id())
    if redis_client.get_selected_destination(collector.session_id):
        ItineraryPropagator(collector.session_id).clear()
    wire = [destination.to_wire() for destination in destinations]
    redis_client.save_candidate_destinations(collector.session_id, wire)
    return {
        "destinations": wire,
        "selected_destination": redis_client.get_selected_destination(collector.session_id),
    }


@planner_bp.route("/session", methods=["POST"])
def start_session() -> ResponseOrTuple:
    """
    新しい計画セッションを発行する
    Issue a new planning session.
    """
    if not security.is_csrf_valid(request):
        return error_response("Invalid request origin.", status=403)
    session_id = str(uuid.uuid4())
    redis_client.reset_session(session_id)
    response = make_response(jsonify({"session_id": session_id}))
    response.set_cookie("session_id", session_id, **security.cookie_settings(request))
    return response


@planner_bp.route("/planner", methods=["GET"])
def planner_state() -> ResponseOrTuple:
    session_id, error = _guard()
    if error:
        return error
    return jsonify(_planner_state(_collector(session_id)))


@planner_bp.route("/planner/select", methods=["POST"])
def select_option() -> ResponseOrTuple:
    session_id, error = _guard()
    if error:
        return error
    data = _json_body()
    category = data.get("category")
    option = data.get("option")
    if not clean_option(category) or not clean_option(option):
        return error_response("Both category and option are required.")
    collector = _collector(session_id)
    collector.record_selection(category, option)
    return jsonify(_planner_state(collector))


@planner_bp.route("/planner/next", methods=["POST"])
def next_question() -> ResponseOrTuple:
    """
    次の質問へ進む。最後の質問を終えたら候補地を検索する
    Advance to the next question; finishing the last one triggers a destination search.
    """
    session_id, error = _guard()
    if error:
        return error
    collector = _collector(session_id)
    moved = collector.advance()
    body = _planner_state(collector)
    body["moved"] = moved
    if moved and collector.is_complete:
        try:
            body.update(_search(collector))
        except (ParseFailure, BackendFailure) as e:
            logger.error("Destination search failed: %s", e)
            body.update({"destinations": [], "error": AI_ERROR_MESSAGE, "retry": True})
    return jsonify(body)


@planner_bp.route("/planner/back", methods=["POST"])
def previous_question() -> ResponseOrTuple:
    session_id, error = _guard()
    if error:
        return error
    collector = _collector(session_id)
    moved = collector.go_back()
    body = _planner_state(collector)
    body["moved"] = moved
    return jsonify(body)


@planner_bp.route("/planner/customize", methods=["POST"])
def customize() -> ResponseOrTuple:
    session_id, error = _guard()
    if error:
        return error
    preferences = _json_body().get("preferences")
    if not isinstance(preferences, dict):
        return error_response("preferences must be an object of option lists.")
    collector = _collector(session_id)
    collector.apply_customization(preferences)
    return jsonify(_planner_state(collector))


@planner_bp.route("/destinations/search", methods=["POST"])
def search_destinations() -> ResponseOrTuple:
    session_id, error = _guard()
    if error:
        return error
    collector = _collector(session_id)
    if not collector.preferences:
        return error_response("Choose at least one preference first.")
    try:
        return jsonify(_search(collector))
    except (ParseFailure, BackendFailure) as e:
        logger.error("Destination search failed: %s", e)
        return error_response(AI_ERROR_MESSAGE, status=502, destinations=[], retry=True)
    except Exception as e:
        logger.error("Destination search crashed: %s", e, exc_info=True)
        return error_response("Internal server error.", status=500)


@planner_bp.route("/destinations/select", methods=["POST"])
def select_destination() -> ResponseOrTuple:
    session_id, error = _guard()
    if error:
        return error
    title = clean_option(_json_body().get("title"))
    if not title:
        return error_response("title is required.")
    key = destination_key(title)
    for candidate in redis_client.get_candidate_destinations(session_id):
        if destination_key(candidate.get("title", "")) == key:
            destination = Destination.model_validate(candidate)
            break
    else:
        return error_response("Destination is not among the current candidates.", status=404)

    current = _selected_destination(session_id)
    if current is None or current.key != destination.key:
        ItineraryPropagator(session_id).clear()
    redis_client.save_selected_destination(session_id, destination.to_wire())
    return jsonify({"destination": destination.to_wire()})


@planner_bp.route("/destinations/details", methods=["GET"])
def destination_details() -> ResponseOrTuple:
    session_id, error = _guard()
    if error:
        return error
    destination = _selected_destination(session_id)
    if destination is None:
        return error_response("Select a destination first.", status=404)
    preferences = redis_client.get_selected_preferences(session_id)
    try:
        destination = destination_resolver.resolve_details(destination, preferences, user_id=_user_id())
    except (ParseFailure, BackendFailure) as e:
        logger.error("Destination details failed for %s: %s", destination.title, e)
        return error_response(AI_ERROR_MESSAGE, status=502, retry=True)
    except Exception as e:
        logger.error("Destination details crashed: %s", e, exc_info=True)
        return error_response("Internal server error.", status=500)
    redis_client.save_selected_destination(session_id, destination.to_wire())
    return jsonify({"destination": destination.to_wire()})


def _parse_start_date(raw: Any) -> Optional[datetime.date]:
    if not raw:
        return datetime.date.today()
    try:
        return datetime.date.fromisoformat(str(raw).strip())
    except ValueError:
        return None


def _generation_body(result: itinerary_generator.GenerationResult) -> Dict[str, Any]:
    saved = result.saved or {}
    return {
        "itinerary": result.itinerary.to_wire(),
        "source": result.source,
        "visibility_prompt": result.visibility_prompt,
        "itinerary_id": saved.get("id"),
        "share_id": saved.get("share_id"),
    }


@planner_bp.route("/itinerary/generate", methods=["POST"])
def generate_itinerary() -> ResponseOrTuple:
    """
    選択中の目的地の旅程を用意し、購読中のビューへ通知する
    Produce the itinerary for the selected destination and notify subscribed views.
    """
    session_id, error = _guard()
    if error:
        return error
    start_date = _parse_start_date(_json_body().get("start_date"))
    if start_date is None:
        return error_response("start_date must be an ISO date (YYYY-MM-DD).")
    destination = _selected_destination(session_id)
    if destination is None:
        return error_response("Select a destination first.", status=404)
    preferences = redis_client.get_selected_preferences(session_id)
    user_id = _user_id()

    propagator = ItineraryPropagator(session_id)
    try:
        result = propagator.track_generation(
            lambda: itinerary_generator.generate(destination, preferences, start_date, user_id=user_id),
            destination,
            preferences,
        )
    except (ParseFailure, BackendFailure) as e:
        logger.error("Itinerary generation failed for %s: %s", destination.title, e)
        return error_response(AI_ERROR_MESSAGE, status=502, retry=True)
    except Exception as e:
        logger.error("Itinerary generation crashed: %s", e, exc_info=True)
        return error_response("Internal server error.", status=500)
    return jsonify(_generation_body(result))


@planner_bp.route("/itinerary/regenerate", methods=["POST"])
def regenerate_itinerary() -> ResponseOrTuple:
    session_id, error = _guard()
    if error:
        return error
    destination = _selected_destination(session_id)
    if destination is None:
        return error_response("Select a destination first.", status=404)
    preferences = redis_client.get_selected_preferences(session_id)
    previous = redis_client.get_generated_itinerary(session_id)

    propagator = ItineraryPropagator(session_id)
    try:
        result = propagator.track_generation(
            lambda: itinerary_generator.regenerate(destination, preferences, previous),
            destination,
            preferences,
        )
    except (ParseFailure, BackendFailure) as e:
        logger.error("Itinerary regeneration failed for %s: %s", destination.title, e)
        return error_response(AI_ERROR_MESSAGE, status=502, retry=True)
    except Exception as e:
        logger.error("Itinerary regeneration crashed: %s", e, exc_info=True)
        return error_response("Internal server error.", status=500)
    return jsonify(_generation_body(result))


@planner_bp.route("/itinerary", methods=["GET"])
def itinerary_snapshot() -> ResponseOrTuple:
    session_id, error = _guard()
    if error:
        return error
    return jsonify({
        "itinerary": redis_client.get_generated_itinerary(session_id),
        "destination": redis_client.get_selected_destination(session_id),
        "marker": redis_client.get_update_marker(session_id),
    })


@planner_bp.route("/itinerary/events", methods=["GET"])
def itinerary_events() -> ResponseOrTuple:
    """
    ビュー状態の変化をSSEで配信する
    Stream view-state changes as Server-Sent Events.
    """
    session_id, error = _guard()
    if error:
        return error

    def stream():
        updates: "queue.Queue[Dict[str, Any]]" = queue.Queue()
        view = ScheduleView(session_id, on_change=lambda changed: updates.put(changed.snapshot()))
        view.mount()
        try:
            yield _format_sse(view.snapshot())
            while True:
                try:
                    snapshot = updates.get(timeout=EVENT_STREAM_KEEPALIVE_SECONDS)
                except queue.Empty:
                    yield ": keepalive\n\n"
                    continue
                yield _format_sse(snapshot)
        finally:
            view.unmount()

    return Response(
        stream(),
        mimetype="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@planner_bp.route("/itinerary/visibility", methods=["POST"])
def itinerary_visibility() -> ResponseOrTuple:
    _, error = _guard(require_user=True)
    if error:
        return error
    data = _json_body()
    try:
        itinerary_id = int(data.get("itinerary_id"))
    except (TypeError, ValueError):
        return error_response("itinerary_id is required.")
    if not isinstance(data.get("is_public"), bool):
        return error_response("is_public must be true or false.")
    try:
        record = persistence.set_itinerary_visibility(itinerary_id, _user_id(), data["is_public"])
    except PersistenceFailure as e:
        logger.error("Visibility update failed: %s", e)
        return error_response("Could not update the itinerary.", status=500)
    if record is None:
        return error_response("Itinerary not found.", status=404)
    return jsonify({"itinerary": record})


@planner_bp.route("/itinerary/save", methods=["POST"])
def save_itinerary() -> ResponseOrTuple:
    """
    編集済みの旅程を新しい保存済み旅程として記録する（公開/非公開は保存時に選ぶ）
    Store an edited itinerary as a new saved itinerary, public or private as chosen.
    """
    session_id, error = _guard(require_user=True)
    if error:
        return error
    data = _json_body()
    if not isinstance(data.get("is_public"), bool):
        return error_response("is_public must be true or false.")
    try:
        itinerary = Itinerary.model_validate(data.get("itinerary"))
    except ValidationError as e:
        logger.warning("Rejected itinerary save: %s", e)
        return error_response("itinerary is malformed.")
    if not itinerary.days:
        return error_response("itinerary has no days.")

    title = clean_option(data.get("destination"))
    if not title and session_id:
        selected = _selected_destination(session_id)
        title = selected.title if selected else None
    if not title:
        return error_response("destination is required.")

    # 編集後の活動数で保存する
    # Count activities after local edits
    itinerary = itinerary.model_copy(
        update={"total_activities": sum(len(day.activities) for day in itinerary.days)}
    )
    preferences = redis_client.get_selected_preferences(session_id) if session_id else {}
    try:
        record = persistence.save_itinerary(
            _user_id(),
            title,
            itinerary,
            preference_fingerprint=fingerprint(preferences) if preferences else None,
            is_public=data["is_public"],
        )
    except PersistenceFailure as e:
        logger.error("Itinerary save failed: %s", e)
        return error_response("Could not save the itinerary.", status=500)
    return jsonify({"itinerary_id": record["id"], "share_id": record["share_id"], "itinerary": record})


@planner_bp.route("/itineraries", methods=["GET"])
def list_itineraries() -> ResponseOrTuple:
    _, error = _guard(require_user=True)
    if error:
        return error
    return jsonify({"itineraries": persistence.list_itineraries(_user_id())})


@planner_bp.route("/itineraries/<int:itinerary_id>", methods=["GET"])
def get_itinerary(itinerary_id: int) -> ResponseOrTuple:
    record = persistence.get_itinerary(itinerary_id, _user_id())
    if record is None:
        return error_response("Itinerary not found.", status=404)
    return jsonify({"itinerary": record})


@planner_bp.route("/itineraries/<int:itinerary_id>", methods=["DELETE"])
def delete_itinerary(itinerary_id: int) -> ResponseOrTuple:
    _, error = _guard(require_user=True)
    if error:
        return error
    try:
        deleted = persistence.delete_itinerary(itinerary_id, _user_id())
    except PersistenceFailure as e:
        logger.error("Itinerary delete failed: %s", e)
        return error_response("Could not delete the itinerary.", status=500)
    if not deleted:
        return error_response("Itinerary not found.", status=404)
    return jsonify({"deleted": True})


@planner_bp.route("/shared/<share_id>", methods=["GET"])
def shared_itinerary(share_id: str) -> ResponseOrTuple:
    record = persistence.get_shared_itinerary(share_id)
    if record is None:
        return error_response("Shared itinerary not found.", status=404)
    return jsonify({"itinerary": record})


@planner_bp.route("/attractions/nearby", methods=["GET"])
def nearby_attractions() -> ResponseOrTuple:
    city = clean_option(request.args.get("city")) or ""
    lat = request.args.get("lat", type=float)
    lng = request.args.get("lng", type=float)
    if lat is None or lng is None:
        coordinates = locations.coordinates_for(request.args.get("location") or city)
        if coordinates is None:
            return error_response("Coordinates are unknown for this location.", status=404)
        lat, lng = coordinates
    try:
        attractions = generation.nearby_attractions(lat, lng, city)
    except (ParseFailure, BackendFailure) as e:
        logger.error("Nearby attractions failed: %s", e)
        return error_response(AI_ERROR_MESSAGE, status=502, attractions=[], retry=True)
    return jsonify({"attractions": [attraction.to_wire() for attraction in attractions]})


@planner_bp.route("/reset", methods=["POST"])
def reset_planning() -> ResponseOrTuple:
    """
    計画をやり直す。セッションの状態を消し、clear を通知する
    Restart planning: drop session state and emit a clear notification.
    """
    session_id, error = _guard()
    if error:
        return error
    redis_client.reset_session(session_id)
    ItineraryPropagator(session_id).clear()
    return jsonify(_planner_state(_collector(session_id)))
