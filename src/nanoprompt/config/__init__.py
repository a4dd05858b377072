"""Configuration: Pydantic models for nanoprompt settings."""

from __future__ import annotations

import json
import os
from typing import Any

from dotenv import find_dotenv, load_dotenv
from pydantic import BaseModel, Field


class PTYConfig(BaseModel):
    """Pseudo-terminal session configuration.

    ``shell`` overrides the platform default interactive shell
    (``$SHELL``, falling back to ``/bin/sh``).
    """

    shell: str | None = Field(default=None)
    term: str = Field(default="xterm-256color")
    colorterm: str = Field(default="truecolor")
    env: dict[str, str] = Field(
        default_factory=dict,
        description="Extra environment variables for spawned shells",
    )
    read_chunk_size: int = Field(default=4096, gt=0)
    lock_timeout: float | None = Field(
        default=5.0,
        description="Seconds to wait for a registry/session lock; None blocks forever",
    )
    kill_timeout: float = Field(
        default=2.0, ge=0, description="Seconds to wait for a killed child to be reaped"
    )
    default_rows: int = Field(default=24, ge=1, le=0xFFFF)
    default_cols: int = Field(default=80, ge=1, le=0xFFFF)


class FontConfig(BaseModel):
    """Font lookup configuration."""

    extra_dirs: list[str] = Field(
        default_factory=list, description="Searched before the platform font dirs"
    )


class NanopromptConfig(BaseModel):
    """Top-level nanoprompt configuration."""

    pty: PTYConfig = Field(default_factory=PTYConfig)
    fonts: FontConfig = Field(default_factory=FontConfig)

    @classmethod
    def load(cls, config_path: str | None = None) -> NanopromptConfig:
        """Load config from file, env vars, or defaults.

        Priority: env vars > config file > defaults.

        Env vars:
            NANOPROMPT_SHELL            - Shell to spawn instead of $SHELL
            NANOPROMPT_TERM             - TERM value for spawned shells
            NANOPROMPT_COLORTERM        - COLORTERM value for spawned shells
            NANOPROMPT_READ_CHUNK_SIZE  - Reader loop chunk size in bytes
            NANOPROMPT_LOCK_TIMEOUT     - Lock acquisition timeout in seconds
            NANOPROMPT_FONT_DIRS        - Extra font dirs (os.pathsep separated)
        """
        # .env from the working directory; real env vars win over it
        load_dotenv(find_dotenv(usecwd=True))

        config_data: dict[str, Any] = {}

        if config_path and os.path.exists(config_path):
            with open(config_path) as f:
                config_data = json.load(f)

        pty_data = config_data.get("pty", {})

        env_shell = os.environ.get("NANOPROMPT_SHELL")
        if env_shell:
            pty_data["shell"] = env_shell

        env_term = os.environ.get("NANOPROMPT_TERM")
        if env_term:
            pty_data["term"] = env_term

        env_colorterm = os.environ.get("NANOPROMPT_COLORTERM")
        if env_colorterm:
            pty_data["colorterm"] = env_colorterm

        env_chunk = os.environ.get("NANOPROMPT_READ_CHUNK_SIZE")
        if env_chunk:
            pty_data["read_chunk_size"] = int(env_chunk)

        env_lock_timeout = os.environ.get("NANOPROMPT_LOCK_TIMEOUT")
        if env_lock_timeout:
            pty_data["lock_timeout"] = float(env_lock_timeout)

        if pty_data:
            config_data["pty"] = pty_data

        env_font_dirs = os.environ.get("NANOPROMPT_FONT_DIRS")
        if env_font_dirs:
            fonts = config_data.get("fonts", {})
            fonts["extra_dirs"] = [d for d in env_font_dirs.split(os.pathsep) if d]
            config_data["fonts"] = fonts

        return cls.model_validate(config_data)
