#!/usr/bin/env python3
"""
Configuration management for the lavalier audio sync core.

Every tuning constant of the estimator lives here so it can be overridden
through ``LAVSYNC_*`` environment variables without touching code.
"""

import logging
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Sync core settings with environment variable support."""

    model_config = SettingsConfigDict(env_prefix="LAVSYNC_", case_sensitive=False)

    # Application settings
    APP_NAME: str = "Lavalier Audio Sync"
    VERSION: str = "1.0.0"

    # Decoding
    SAMPLE_RATE: int = Field(default=44100, gt=0)
    FFMPEG_PATH: str = "ffmpeg"
    FFPROBE_PATH: str = "ffprobe"

    # Feature extraction
    FRAME_SIZE: int = Field(default=2048, gt=0)
    HOP_SIZE: int = Field(default=512, gt=0)
    N_MFCC: int = Field(default=13, gt=0)
    N_MELS: int = Field(default=40, gt=0)
    MIN_ONSET_GAP: float = Field(default=0.25, ge=0.0)  # seconds
    ONSET_HISTORY: float = Field(default=0.5, gt=0.0)  # seconds of running statistics
    ONSET_DELTA_DB: float = Field(default=3.0, ge=0.0)  # rise over the running mean
    ONSET_FLOOR: float = Field(default=0.05, ge=0.0)  # fraction of peak energy

    # Analysis window
    MIN_WINDOW: float = Field(default=10.0, gt=0.0)
    MAX_WINDOW: float = Field(default=30.0, gt=0.0)
    WINDOW_FRACTION: float = Field(default=0.3, gt=0.0, le=1.0)
    MIN_ANALYSIS_SECONDS: float = Field(default=1.0, gt=0.0)
    MIN_WINDOW_OVERLAP: float = Field(default=0.5, ge=0.0, le=1.0)

    # Algorithms
    ALGORITHM_FLOOR: float = Field(default=0.2, ge=0.0, le=1.0)
    DTW_SLOPE: float = Field(default=2.0, ge=1.0)
    DTW_COST_SCALE: float = Field(default=1.0, gt=0.0)
    ONSET_TOLERANCE_SECONDS: float = Field(default=1000.0 / 44100.0, gt=0.0)
    ONSET_ANCHORS: int = Field(default=5, gt=0)
    USE_FFT: bool = True
    FLAT_TOLERANCE: float = Field(default=5e-3, ge=0.0)  # std relative to peak below which a track is constant

    # Fusion
    MAX_OFFSET: float = Field(default=30.0, gt=0.0)
    MIN_CONFIDENCE: float = Field(default=0.3, ge=0.0, le=1.0)
    AGREEMENT_TOLERANCE: float = Field(default=0.1, gt=0.0)  # seconds
    MIN_CORROBORATING: int = Field(default=2, ge=1)  # agreeing estimators needed below SOLO_CONFIDENCE
    SOLO_CONFIDENCE: float = Field(default=0.6, ge=0.0, le=1.0)

    # Logging settings
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    LOG_FILE: Optional[str] = None

    # Offset cache
    CACHE_PATH: Optional[str] = None
    CACHE_MARGIN: float = Field(default=2.0, gt=0.0)  # seconds searched either side of a cached offset

    @field_validator("LOG_LEVEL")
    @classmethod
    def validate_log_level(cls, v):
        """Validate log level is one the logging module knows."""
        level = v.upper()
        if not isinstance(logging.getLevelName(level), int):
            raise ValueError(f"Unknown log level: {v}")
        return level

    @field_validator("MAX_WINDOW")
    @classmethod
    def validate_max_window(cls, v, info):
        min_window = info.data.get("MIN_WINDOW")
        if min_window is not None and v < min_window:
            raise ValueError(f"MAX_WINDOW ({v}) must be >= MIN_WINDOW ({min_window})")
        return v

    @field_validator("HOP_SIZE")
    @classmethod
    def validate_hop(cls, v, info):
        frame_size = info.data.get("FRAME_SIZE")
        if frame_size is not None and v > frame_size:
            raise ValueError(f"HOP_SIZE ({v}) must not exceed FRAME_SIZE ({frame_size})")
        return v


settings = Settings()
