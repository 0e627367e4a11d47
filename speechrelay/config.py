# speechrelay/config.py
import os
from dotenv import load_dotenv


load_dotenv()  # Load environment variables from .env file


def _env_flag(name: str, default: str) -> bool:
    return os.environ.get(name, default).lower() in {"1", "true", "yes", "on"}


class Config:
    # General environmental details
    APP_NAME = os.environ.get("APP_NAME", "SpeechRelay")
    SECRET_KEY = os.environ.get("SECRET_KEY", "change_me_in_env")
    try:
        PORT = int(os.environ.get("PORT", "8080"))
    except ValueError:
        PORT = 8080

    # Socket.IO transport
    CORS_ALLOWED_ORIGINS = os.environ.get("CORS_ALLOWED_ORIGINS", "*")
    # Each session runs its own asyncio loop in a real thread; eventlet's
    # monkey patching breaks that, so threading is the default.
    SOCKETIO_ASYNC_MODE = os.environ.get("SOCKETIO_ASYNC_MODE", "threading")
    try:
        SOCKETIO_MAX_HTTP_BUFFER_SIZE = max(1024, int(os.environ.get("SOCKETIO_MAX_HTTP_BUFFER_SIZE", "100000000")))
    except ValueError:
        SOCKETIO_MAX_HTTP_BUFFER_SIZE = 100_000_000

    # Provider selection and credentials
    STT_PROVIDER = os.environ.get("STT_PROVIDER") or os.environ.get("TRANSCRIPTION_PROVIDER") or "google"
    GOOGLE_KEY = os.environ.get("GOOGLE_KEY")  # inline service account JSON, optional
    AWS_REGION = os.environ.get("AWS_REGION", "us-east-1")

    # Default stream definition, passed through verbatim to the provider
    STT_ENCODING = os.environ.get("STT_ENCODING", "WEBM_OPUS")
    try:
        STT_SAMPLE_RATE_HZ = max(8000, int(os.environ.get("STT_SAMPLE_RATE_HZ", "48000")))
    except ValueError:
        STT_SAMPLE_RATE_HZ = 48000
    STT_LANGUAGE_CODE = os.environ.get("STT_LANGUAGE_CODE", "vi-VN")
    STT_MODEL = os.environ.get("STT_MODEL", "latest_long")
    STT_WORD_TIME_OFFSETS = _env_flag("STT_WORD_TIME_OFFSETS", "true")

    # Stream lifecycle timing. The provider cuts streams off at ~300-305s.
    try:
        STREAM_GUARD_SECONDS = max(1.0, float(os.environ.get("STREAM_GUARD_SECONDS", "290")))
    except ValueError:
        STREAM_GUARD_SECONDS = 290.0
    try:
        STREAM_EXPIRY_RESTART_DELAY_SECONDS = max(0.0, float(os.environ.get("STREAM_EXPIRY_RESTART_DELAY_SECONDS", "0")))
    except ValueError:
        STREAM_EXPIRY_RESTART_DELAY_SECONDS = 0.0
    try:
        STREAM_ERROR_RESTART_DELAY_SECONDS = max(0.0, float(os.environ.get("STREAM_ERROR_RESTART_DELAY_SECONDS", "1.0")))
    except ValueError:
        STREAM_ERROR_RESTART_DELAY_SECONDS = 1.0
    try:
        STREAM_OPEN_RETRY_DELAY_SECONDS = max(0.0, float(os.environ.get("STREAM_OPEN_RETRY_DELAY_SECONDS", "2.0")))
    except ValueError:
        STREAM_OPEN_RETRY_DELAY_SECONDS = 2.0
    try:
        STREAM_MAX_OPEN_ATTEMPTS = max(1, int(os.environ.get("STREAM_MAX_OPEN_ATTEMPTS", "5")))
    except ValueError:
        STREAM_MAX_OPEN_ATTEMPTS = 5
    # A new stream that errors before delivering a result or lasting this long
    # counts towards STREAM_MAX_OPEN_ATTEMPTS.
    try:
        STREAM_STABLE_SECONDS = max(0.0, float(os.environ.get("STREAM_STABLE_SECONDS", "10")))
    except ValueError:
        STREAM_STABLE_SECONDS = 10.0

    # Batch (offline) analysis
    try:
        BATCH_MIN_SPEAKERS = max(1, int(os.environ.get("BATCH_MIN_SPEAKERS", "1")))
    except ValueError:
        BATCH_MIN_SPEAKERS = 1
    try:
        BATCH_MAX_SPEAKERS = max(BATCH_MIN_SPEAKERS, int(os.environ.get("BATCH_MAX_SPEAKERS", "5")))
    except ValueError:
        BATCH_MAX_SPEAKERS = max(5, BATCH_MIN_SPEAKERS)
    try:
        BATCH_TIMEOUT_SECONDS = max(1.0, float(os.environ.get("BATCH_TIMEOUT_SECONDS", "600")))
    except ValueError:
        BATCH_TIMEOUT_SECONDS = 600.0
