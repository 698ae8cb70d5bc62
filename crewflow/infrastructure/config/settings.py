"""
Crewflow runtime settings.

Values are read from the environment (a local .env file is loaded first):

- CREWFLOW_LOG_LEVEL / CREWFLOW_LOG_FORMAT / CREWFLOW_SERVICE_NAME: logging
- CREWFLOW_MAX_TRANSFER_HOPS: chained pre-message transfers allowed per turn
- CREWFLOW_MAX_TOOL_ROUND_TRIPS: tool call round trips allowed per reply
- CREWFLOW_EXTRACTION_WINDOW: messages handed to the extractor in conversational mode
- CREWFLOW_HISTORY_LIMIT: messages kept per conversation
- CREWFLOW_SPECULATIVE_GENERATION: draft the reply while fields are extracted
- CREWFLOW_AGENTS_PACKAGE: package holding one sub-package per agent with crew modules
- CREWFLOW_CREW_CONFIG_DIR: directory of <agent>.json declarative crew configs
- CREWFLOW_HOST / CREWFLOW_PORT: where the agent server listens
- CREWFLOW_CHAT_MODEL: "module:attribute" naming a LangChain chat model or a
  zero-argument factory returning one
"""

import os
from functools import lru_cache
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel

load_dotenv()


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("1", "true", "yes")


class LoggingSettings(BaseModel):
    """Structured logging settings"""

    log_level: str = os.getenv("CREWFLOW_LOG_LEVEL", "INFO")
    log_format: str = os.getenv("CREWFLOW_LOG_FORMAT", "json")
    service_name: str = os.getenv("CREWFLOW_SERVICE_NAME", "crewflow")


class OrchestrationSettings(BaseModel):
    """Limits and switches for the turn pipeline"""

    max_transfer_hops: int = int(os.getenv("CREWFLOW_MAX_TRANSFER_HOPS", "5"))
    max_tool_round_trips: int = int(os.getenv("CREWFLOW_MAX_TOOL_ROUND_TRIPS", "10"))
    extraction_window: int = int(os.getenv("CREWFLOW_EXTRACTION_WINDOW", "10"))
    history_limit: int = int(os.getenv("CREWFLOW_HISTORY_LIMIT", "100"))
    speculative_generation: bool = _env_bool("CREWFLOW_SPECULATIVE_GENERATION", "true")


class CrewSourceSettings(BaseModel):
    """Where crew definitions are loaded from"""

    agents_package: str = os.getenv("CREWFLOW_AGENTS_PACKAGE", "crewflow.agents")
    crew_config_dir: Optional[str] = os.getenv("CREWFLOW_CREW_CONFIG_DIR")


class ServerSettings(BaseModel):
    """Standalone agent server"""

    host: str = os.getenv("CREWFLOW_HOST", "0.0.0.0")
    port: int = int(os.getenv("CREWFLOW_PORT", "8000"))
    chat_model: Optional[str] = os.getenv("CREWFLOW_CHAT_MODEL")


class Settings(BaseModel):
    """Top-level settings container"""

    logging: LoggingSettings = LoggingSettings()
    orchestration: OrchestrationSettings = OrchestrationSettings()
    crew_sources: CrewSourceSettings = CrewSourceSettings()
    server: ServerSettings = ServerSettings()


@lru_cache()
def get_settings() -> Settings:
    return Settings()
