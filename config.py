import os
from dotenv import load_dotenv
from pathlib import Path

load_dotenv()

# credentials
STT_API_KEY = os.getenv("STT_API_KEY", "")

# logging config
LOG_LEVEL = os.getenv("LOG_LEVEL", "DEV").upper()

# file config
BASE_PATH = Path(__file__).parent
LOG_PATH = Path(os.getenv("LOG_PATH", str(BASE_PATH / "log")))

# audio
AUDIO_SAMPLE_RATE = 16000
AUDIO_CHANNELS = 1
# Size of PCM chunks forwarded to the engine.
CHUNK_MS = int(os.getenv("CHUNK_MS", "100"))

# Realtime STT engine (Deepgram-compatible live endpoint)
STT_REALTIME_URL = os.getenv("STT_REALTIME_URL", "wss://api.deepgram.com/v1/listen")
STT_MODEL = os.getenv("STT_MODEL", "nova-3")
STT_LANGUAGE = os.getenv("STT_LANGUAGE", "en-US")
# How long the engine waits in silence before it finalizes a segment.
STT_ENDPOINTING_MS = 700
STT_CONNECT_TIMEOUT_S = 15.0

# Session / batching
# Stop the session when nothing was heard for this long.
SILENCE_TIMEOUT_MS = int(os.getenv("SILENCE_TIMEOUT_MS", "10000"))
SILENCE_CHECK_INTERVAL_MS = 1000
# Restarts allowed in a row before the session gives up.
MAX_RESTART_ATTEMPTS = int(os.getenv("MAX_RESTART_ATTEMPTS", "5"))
NETWORK_RETRY_DELAY_MS = int(os.getenv("NETWORK_RETRY_DELAY_MS", "2000"))
# Batches at least this similar (Jaccard over words) to the previous one are dropped.
SIMILARITY_THRESHOLD = 0.7

# Connectivity probe
CONNECTIVITY_URL = os.getenv("CONNECTIVITY_URL", "https://www.google.com/generate_204")
CONNECTIVITY_TIMEOUT_S = 5.0
# A probe within this window of the previous one is assumed to succeed.
CONNECTIVITY_CHECK_INTERVAL_S = 1.0
