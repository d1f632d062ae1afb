"""
FastAPI application entry point for the Live Face Verification service
"""
from fastapi import FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ValidationError
from typing import Optional
import os
import logging
import json
import base64
import binascii
import numpy as np
import cv2
import asyncio
import uvicorn
from dotenv import load_dotenv
from starlette.exceptions import HTTPException as StarletteHTTPException

from liveverify.config import VerificationConfig
from liveverify.services import (
    FaceMatcher,
    ImageDownloader,
    MediaPipeFaceDetector,
    VerificationSession,
    VerificationStore,
)
from liveverify.models.data_models import FeedbackType, VerificationFeedback

# Load environment variables
load_dotenv()

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# Initialize FastAPI app
app = FastAPI(
    title="Live Face Verification API",
    description="Live face verification with pose capture, liveness challenges and profile photo matching",
    version="2.0.0"
)

origins = os.getenv("CORS_ORIGINS", "http://localhost:3000").split(",")
app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Initialize services
verification_config = VerificationConfig.from_env()

model_path = os.getenv("MEDIAPIPE_MODEL_PATH", None)
if model_path is None:
    # Try default location
    default_path = os.path.join(os.path.expanduser("~"), ".mediapipe_models", "face_landmarker.task")
    if os.path.exists(default_path):
        model_path = default_path
face_detector = MediaPipeFaceDetector(model_path=model_path)

verification_store = VerificationStore(storage_dir=os.getenv("LIVEVERIFY_STORAGE_DIR", None))

image_downloader = ImageDownloader(
    request_timeout=float(os.getenv("DOWNLOAD_REQUEST_TIMEOUT", "15")),
    total_timeout=float(os.getenv("DOWNLOAD_TOTAL_TIMEOUT", "30")),
)

face_matcher = FaceMatcher(
    photo_source=verification_store,
    downloader=image_downloader,
    detector=face_detector,
    sink=verification_store,
    match_threshold=verification_config.match_threshold,
)

# Feedback types after which the session has reached a terminal state
_TERMINAL_FEEDBACK = (FeedbackType.VERIFICATION_SUCCEEDED, FeedbackType.VERIFICATION_FAILED)


@app.on_event("shutdown")
async def shutdown_event():
    """Release the detector model and the HTTP client"""
    logger.info("Application shutdown: releasing resources")
    face_detector.close()
    await image_downloader.aclose()


class ClientMessage(BaseModel):
    """Message sent by the client over /ws/verify"""
    type: str
    frame: Optional[str] = None


# Global exception handler
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Handle all unhandled exceptions"""
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={
            "error": {
                "code": "INTERNAL_SERVER_ERROR",
                "message": "An unexpected error occurred",
                "category": "system",
                "recoverable": False
            }
        }
    )


# HTTP exception handler
@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    """Handle HTTP exceptions with consistent error format"""
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error": {
                "code": exc.detail if isinstance(exc.detail, str) else "HTTP_ERROR",
                "message": str(exc.detail),
                "category": "http",
                "recoverable": exc.status_code < 500
            }
        }
    )


@app.get("/")
async def root():
    """Root endpoint"""
    return {
        "message": "Live Face Verification API",
        "status": "running",
        "version": "2.0.0"
    }


@app.get("/health")
async def health_check():
    """Health check endpoint for monitoring"""
    return {
        "status": "healthy",
        "services": {
            "api": "operational",
            "face_detector": "operational" if face_detector.model_path else "unavailable",
            "store": "operational"
        }
    }


@app.websocket("/ws/verify/{user_id}")
async def websocket_verify_endpoint(websocket: WebSocket, user_id: str):
    """
    WebSocket endpoint for live face verification.

    The client streams camera frames; every message is answered with the
    current session snapshot, and feedback notifications are pushed as they
    happen (including the final match result).

    Args:
        websocket: WebSocket connection
        user_id: Owner of the profile photos the live face is matched against
    """
    await websocket.accept()
    logger.info(f"WebSocket connection established for user {user_id}")

    outbox: asyncio.Queue = asyncio.Queue()

    def on_feedback(feedback: VerificationFeedback) -> None:
        outbox.put_nowait(_feedback_message(feedback))
        if feedback.type in _TERMINAL_FEEDBACK:
            outbox.put_nowait(_state_message(session))

    session = VerificationSession(
        matcher=face_matcher,
        config=verification_config,
        on_feedback=on_feedback,
    )
    session.start_verification(user_id)

    sender = asyncio.create_task(_pump_messages(websocket, outbox))
    outbox.put_nowait(_state_message(session))

    try:
        while True:
            data = await websocket.receive_text()

            try:
                message = ClientMessage(**json.loads(data))
            except (json.JSONDecodeError, TypeError, ValidationError) as e:
                logger.warning(f"Invalid message received: {e}")
                outbox.put_nowait(_error_message("INVALID_MESSAGE", "Message must be a JSON object with a type"))
                continue

            if message.type == "frame":
                frame = _decode_frame(message.frame) if message.frame else None
                if frame is None:
                    outbox.put_nowait(_error_message("INVALID_FRAME", "Could not decode video frame"))
                    continue

                # Frames arriving while matching runs or after the result are only answered
                if session.accepts_frames:
                    observation = await asyncio.to_thread(face_detector.detect, frame)
                    session.process_observation(observation, frame)

            elif message.type == "retry":
                if not session.retry():
                    outbox.put_nowait(_error_message("RETRY_NOT_ALLOWED", "Retry is only possible after a failure"))

            else:
                outbox.put_nowait(_error_message("UNKNOWN_MESSAGE", f"Unknown message type: {message.type}"))
                continue

            outbox.put_nowait(_state_message(session))

    except WebSocketDisconnect:
        logger.info(f"WebSocket disconnected for user {user_id}")

    except Exception as e:
        logger.error(f"Error in WebSocket handler: {e}", exc_info=True)
        try:
            await websocket.close(code=1011, reason="Internal error")
        except RuntimeError as close_error:
            logger.debug(f"WebSocket already closed: {close_error}")

    finally:
        session.cancel()
        sender.cancel()
        try:
            await sender
        except asyncio.CancelledError:
            pass


async def _pump_messages(websocket: WebSocket, outbox: asyncio.Queue) -> None:
    """Single writer for the socket; state replies and feedback share one queue"""
    while True:
        message = await outbox.get()
        try:
            await websocket.send_json(message)
        except (WebSocketDisconnect, RuntimeError) as e:
            logger.info(f"Stopped sending to WebSocket: {e}")
            return


def _state_message(session: VerificationSession) -> dict:
    return {"type": "state", "data": session.snapshot().to_dict()}


def _feedback_message(feedback: VerificationFeedback) -> dict:
    return {
        "type": "feedback",
        "feedback_type": feedback.type.value,
        "message": feedback.message,
        "data": feedback.data
    }


def _error_message(code: str, message: str) -> dict:
    return {
        "type": "error",
        "error": {
            "code": code,
            "message": message,
            "category": "validation",
            "recoverable": True
        }
    }


def _decode_frame(frame_data: str) -> Optional[np.ndarray]:
    """
    Decode base64-encoded video frame.

    Args:
        frame_data: Base64-encoded image data, optionally a data URL

    Returns:
        Decoded frame as numpy array, or None if decoding fails
    """
    # Remove data URL prefix if present
    if "," in frame_data:
        frame_data = frame_data.split(",", 1)[1]

    try:
        img_bytes = base64.b64decode(frame_data, validate=True)
    except (binascii.Error, ValueError) as e:
        logger.error(f"Error decoding frame: {e}")
        return None

    if not img_bytes:
        return None

    nparr = np.frombuffer(img_bytes, np.uint8)
    return cv2.imdecode(nparr, cv2.IMREAD_COLOR)


def run():
    """Serve the API with uvicorn (HOST / PORT from the environment)"""
    uvicorn.run(
        "liveverify.main:app",
        host=os.getenv("HOST", "0.0.0.0"),
        port=int(os.getenv("PORT", "8000")),
    )


if __name__ == "__main__":
    run()
