"""Configuration settings for the HLS download API."""

import os
import tempfile

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment."""

    # App
    app_name: str = "HLS Download API"
    debug: bool = False
    log_level: str = "INFO"
    host: str = "0.0.0.0"
    port: int = 8765

    # Scratch space; each request gets its own directory below this
    temp_dir: str = os.path.join(tempfile.gettempdir(), "hls2mp4")

    # Manifest fetching
    fetch_timeout_sec: float = 30.0
    user_agent: str = "hls2mp4/0.1"

    # Transcoding
    ffmpeg_binary: str = "ffmpeg"
    ffmpeg_log_level: str = "error"
    protocol_whitelist: str = "file,http,https,tcp,tls,crypto"
    transcode_timeout_sec: float = 1800.0  # 30 minutes
    chunk_size: int = 64 * 1024

    # Response
    filename_prefix: str = "lecture"
    example_url: str = "https://your-app.example.com/download?url=https://media-cdn.example.com/.../master.m3u8"

    class Config:
        env_file = ".env"


settings = Settings()
