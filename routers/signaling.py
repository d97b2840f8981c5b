from fastapi import APIRouter, Depends, Request
from schemas.signaling import RoomRequest, Room, PollRequest, PollResponse, ErrorResponse
from room_store import RoomStore
from logging_config import get_logger

logger = get_logger(__name__)

ERROR_RESPONSES = {
    400: {"model": ErrorResponse, "description": "Malformed body or unknown room"},
    500: {"model": ErrorResponse, "description": "Store failure"},
}


def get_room_store(request: Request) -> RoomStore:
    return request.app.state.room_store


def build_signaling_router(base_path: str = "") -> APIRouter:
    router = APIRouter(prefix=base_path, tags=["signaling"], responses=ERROR_RESPONSES)

    @router.post("/create", response_model=Room)
    async def create(body: RoomRequest, rooms: RoomStore = Depends(get_room_store)):
        logger.info(f"Create request for room {body.room} by {body.id}")
        return rooms.create_or_reset(body.room, body.id)

    @router.post("/join", response_model=Room)
    async def join(body: RoomRequest, rooms: RoomStore = Depends(get_room_store)):
        logger.info(f"Join request for room {body.room} by {body.id}")
        return rooms.join(body.room, body.id)

    @router.post("/bye", response_model=Room)
    async def bye(body: RoomRequest, rooms: RoomStore = Depends(get_room_store)):
        logger.info(f"Bye request for room {body.room} by {body.id}")
        return rooms.leave(body.room, body.id)

    @router.post("/", response_model=PollResponse)
    async def poll(body: PollRequest, rooms: RoomStore = Depends(get_room_store)):
        # Send and receive share one round trip; a missing message is a pure poll.
        messages, last = rooms.poll(body.room, body.message, body.last)
        if messages:
            logger.debug(f"Poll on room {body.room} from cursor {body.last}: {len(messages)} messages, last={last}")
        return PollResponse(room=body.room, messages=messages, last=last)

    return router
