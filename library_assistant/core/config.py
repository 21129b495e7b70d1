"""
Library Assistant — Configuration

Centralised settings from environment variables.
All tuneable constants live here — zero magic numbers in other files.
"""

from __future__ import annotations

import os
from dataclasses import dataclass

from dotenv import load_dotenv
import certifi

os.environ.setdefault("SSL_CERT_FILE", certifi.where())
os.environ.setdefault("REQUESTS_CA_BUNDLE", certifi.where())

load_dotenv()


# ---------------------------------------------------------------------------
# Server
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ServerConfig:
    host: str = os.getenv("HOST", "0.0.0.0")
    port: int = int(os.getenv("PORT", "8080"))
    cors_origins: tuple[str, ...] = (
        "http://localhost:3000",
        "http://127.0.0.1:3000",
        "http://localhost:5173",
    )


# ---------------------------------------------------------------------------
# Conversation provider (Tavus) credentials + conversation properties
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class AssistantConfig:
    """API keys and the hosted-conversation request knobs."""
    api_key: str = os.getenv("TAVUS_API_KEY", "")
    replica_id: str = os.getenv("TAVUS_REPLICA_ID", "")
    persona_id: str = os.getenv("TAVUS_PERSONA_ID", "")
    base_url: str = os.getenv("TAVUS_BASE_URL", "https://tavusapi.com/v2")

    # Hard timeout for a single provider HTTP request (seconds)
    request_timeout: float = 10.0

    conversation_name: str = "Library Assistant Chat"
    # Provider-side safety net; the local time budget ends sessions sooner
    max_call_duration: int = 120
    participant_left_timeout: int = 10
    participant_absent_timeout: int = 10
    enable_recording: bool = False
    enable_closed_captions: bool = True
    apply_greenscreen: bool = False
    language: str = "english"

    @property
    def has_credentials(self) -> bool:
        return all([
            self.api_key,
            self.replica_id,
        ])


# ---------------------------------------------------------------------------
# Realtime transport
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class TransportConfig:
    # Max wait for the call object to acknowledge a join (seconds)
    join_timeout: float = 15.0
    # Max wait for a leave acknowledgement before giving up (seconds)
    leave_timeout: float = 5.0
    # User microphone on, camera off
    local_audio: bool = True
    local_video: bool = False
    # Target for outbound app messages ("*" = every participant)
    app_message_target: str = "*"


# ---------------------------------------------------------------------------
# Time budget
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class TimeBudgetConfig:
    # Offsets are seconds from the join instant
    soft_warning_at: float = 45.0
    hard_warning_at: float = 55.0
    session_budget: float = 60.0
    soft_warning_text: str = (
        "We have about 15 seconds left. Please start wrapping up your response."
    )
    hard_warning_text: str = (
        "URGENT: You have 5 seconds left. Please end your response "
        "immediately with a polite goodbye."
    )


# ---------------------------------------------------------------------------
# Tool-call dispatch
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class DispatchConfig:
    # Rendered calls kept for the debug panel
    history_size: int = 5
    # Max items returned by recommend_books
    recommendation_limit: int = 6
    # Keyword-based tool-call inference from user speech
    enable_keyword_fallback: bool = (
        os.getenv("LIBRARY_KEYWORD_FALLBACK", "1").lower() not in ("0", "false", "no")
    )
    # Remembered call ids for duplicate suppression
    dispatched_id_window: int = 256


# ---------------------------------------------------------------------------
# Singletons
# ---------------------------------------------------------------------------

server_cfg = ServerConfig()
assistant_cfg = AssistantConfig()
transport_cfg = TransportConfig()
budget_cfg = TimeBudgetConfig()
dispatch_cfg = DispatchConfig()
