from contextlib import asynccontextmanager
from datetime import date
from starlette.applications import Starlette
from starlette.background import BackgroundTask
from starlette.responses import JSONResponse
from starlette.requests import Request
from starlette.routing import Route
from db import init_db, get_session
from models import User, DeliveryRequest, SendRequest, Response
from matching import Matcher
from config import get_settings
from exceptions import RequestNotFoundError, ResponseNotFoundError, ResponseNotActionableError
import logging

logger = logging.getLogger(__name__)

matcher = Matcher()

REQUEST_FIELDS = ["user_id", "from_location_id", "to_location_id", "from_date", "to_date"]


def configure_logging():
    settings = get_settings()
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@asynccontextmanager
async def lifespan(app):
    configure_logging()
    init_db()
    logger.info("Parcel matching service started")
    yield


def serialize_response(r: Response) -> dict:
    return {
        "id": r.id,
        "deliverer_id": r.deliverer_id,
        "sender_id": r.sender_id,
        "offer_type": r.offer_type.value,
        "delivery_request_id": r.delivery_request_id,
        "send_request_id": r.send_request_id,
        "response_type": r.response_type.value,
        "deliverer_status": r.deliverer_status.value,
        "sender_status": r.sender_status.value,
        "overall_status": r.overall_status.value,
        "chat_id": r.chat_id,
        "message": r.message,
    }


def parse_request_payload(payload: dict):
    """Validate a request body; returns (fields, error message)."""
    for k in REQUEST_FIELDS:
        if k not in payload:
            return None, f"missing {k}"
    try:
        fields = {
            "user_id": int(payload["user_id"]),
            "from_location_id": int(payload["from_location_id"]),
            "to_location_id": int(payload["to_location_id"]),
            "from_date": date.fromisoformat(payload["from_date"]),
            "to_date": date.fromisoformat(payload["to_date"]),
        }
    except (TypeError, ValueError) as exc:
        return None, f"invalid field: {exc}"
    if fields["from_date"] > fields["to_date"]:
        return None, "from_date must not be after to_date"
    fields["size_type"] = payload.get("size_type")
    fields["description"] = payload.get("description")
    return fields, None


async def _create_request(request: Request, model, match):
    try:
        payload = await request.json()
    except ValueError:
        return JSONResponse({"error": "invalid JSON body"}, status_code=400)
    if not isinstance(payload, dict):
        return JSONResponse({"error": "expected a JSON object"}, status_code=400)
    fields, error = parse_request_payload(payload)
    if error:
        return JSONResponse({"error": error}, status_code=400)
    with get_session() as session:
        if not session.get(User, fields["user_id"]):
            return JSONResponse({"error": "user not found"}, status_code=404)
        obj = model(**fields)
        session.add(obj)
        session.commit()
        session.refresh(obj)
        request_id = obj.id
    logger.info("%s %s created by user %s", model.__name__, request_id, fields["user_id"])
    # matching runs after the response is sent
    return JSONResponse({"request_id": request_id}, status_code=201, background=BackgroundTask(match, request_id))


async def create_send_request(request: Request):
    return await _create_request(request, SendRequest, matcher.match_send_request)


async def create_delivery_request(request: Request):
    return await _create_request(request, DeliveryRequest, matcher.match_delivery_request)


async def _respond(request: Request, action: str):
    response_id = int(request.path_params["response_id"])
    try:
        payload = await request.json()
        user_id = int(payload["user_id"])
    except (ValueError, KeyError, TypeError):
        return JSONResponse({"error": "user_id is required"}, status_code=400)
    result = matcher.handle_user_response(response_id, user_id, action, complete=False)
    if not result.success:
        return JSONResponse({"error": result.message}, status_code=403)
    return JSONResponse(result.as_dict(), background=BackgroundTask(matcher.complete_user_response, result))


async def accept_response(request: Request):
    return await _respond(request, "accept")


async def reject_response(request: Request):
    return await _respond(request, "reject")


async def get_response(request: Request):
    response_id = int(request.path_params["response_id"])
    with get_session() as session:
        r = session.get(Response, response_id)
        if not r:
            return JSONResponse({"error": "response not found"}, status_code=404)
        return JSONResponse(serialize_response(r))


async def deliverer_capacity(request: Request):
    user_id = int(request.path_params["user_id"])
    return JSONResponse(matcher.capacity_info(user_id))


async def distribution_state(request: Request):
    return JSONResponse(matcher.distribution_state())


async def reset_distribution(request: Request):
    matcher.reset_distribution()
    return JSONResponse({"status": "reset"})


async def capacity_stats(request: Request):
    stats = matcher.system_stats()
    stats["loads"] = {str(k): v for k, v in stats["loads"].items()}
    return JSONResponse(stats)


async def trigger_match(request: Request):
    res = matcher.run_matching()
    return JSONResponse(res)


async def not_found(request: Request, exc: Exception):
    return JSONResponse({"error": str(exc)}, status_code=404)


async def not_actionable(request: Request, exc: Exception):
    return JSONResponse({"error": str(exc)}, status_code=409)


routes = [
    Route("/send-requests", create_send_request, methods=["POST"]),
    Route("/delivery-requests", create_delivery_request, methods=["POST"]),
    Route("/responses/{response_id:int}", get_response, methods=["GET"]),
    Route("/responses/{response_id:int}/accept", accept_response, methods=["POST"]),
    Route("/responses/{response_id:int}/reject", reject_response, methods=["POST"]),
    Route("/deliverers/{user_id:int}/capacity", deliverer_capacity, methods=["GET"]),
    Route("/distribution/state", distribution_state, methods=["GET"]),
    Route("/distribution/reset", reset_distribution, methods=["POST"]),
    Route("/stats/capacity", capacity_stats, methods=["GET"]),
    Route("/match/trigger", trigger_match, methods=["POST"]),
]

exception_handlers = {
    RequestNotFoundError: not_found,
    ResponseNotFoundError: not_found,
    ResponseNotActionableError: not_actionable,
}

app = Starlette(debug=True, routes=routes, exception_handlers=exception_handlers, lifespan=lifespan)
