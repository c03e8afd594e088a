from __future__ import annotations

import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml

CONFIG_FILENAME = "rdsinit.yaml"


class ConfigError(RuntimeError):
    pass


@dataclass(frozen=True)
class ResolvedEnv:
    env: str
    aws_profile: str
    aws_region: str
    stack_name: str
    raw: dict[str, Any]


def default_config_path() -> Path:
    xdg_home = Path(os.getenv("XDG_CONFIG_HOME") or (Path.home() / ".config")).expanduser()
    return (xdg_home / "rdsinit" / CONFIG_FILENAME).resolve()


def find_config_path(explicit: str | None) -> Path | None:
    if explicit:
        p = Path(explicit).expanduser().resolve()
        if not p.exists():
            raise ConfigError(f"Config not found: {p}")
        return p

    repo_local = Path(CONFIG_FILENAME).resolve()
    if repo_local.exists():
        return repo_local

    p = default_config_path()
    if p.exists():
        return p
    return None


def load_config_dict(path: Path) -> dict[str, Any]:
    text = path.read_text(encoding="utf-8")
    try:
        obj = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e
    if obj is None:
        return {}
    if not isinstance(obj, dict):
        raise ConfigError("Config root must be a mapping")
    return obj


def save_config_dict(path: Path, cfg: dict[str, Any]) -> None:
    path.write_text(yaml.safe_dump(cfg, sort_keys=False), encoding="utf-8")


def resolve_env(
    cfg: dict[str, Any],
    *,
    env: str | None,
    profile_override: str | None,
    region_override: str | None,
    stack_override: str | None,
) -> ResolvedEnv:
    env_name = env or os.getenv("RDSINIT_ENV") or str(cfg.get("default_env") or "dev")
    envs = cfg.get("envs") or {}
    if not isinstance(envs, dict):
        raise ConfigError("config.envs must be a mapping")
    env_cfg = envs.get(env_name)
    if not isinstance(env_cfg, dict):
        raise ConfigError(f"env '{env_name}' not found (or not a mapping)")

    aws_profile = profile_override or env_cfg.get("aws_profile") or os.getenv("AWS_PROFILE") or ""
    if not aws_profile or aws_profile == "default":
        raise ConfigError(
            "AWS profile is required and may not be 'default'. "
            "Set envs.<env>.aws_profile, or pass --profile, or set AWS_PROFILE."
        )

    aws_region = (
        region_override or env_cfg.get("aws_region") or os.getenv("AWS_REGION") or os.getenv("AWS_DEFAULT_REGION") or ""
    )
    if not aws_region:
        raise ConfigError(
            "AWS region is required. Set envs.<env>.aws_region, or pass --region, or set AWS_REGION/AWS_DEFAULT_REGION."
        )

    stack_name = stack_override or env_cfg.get("stack_name") or ""
    if not stack_name:
        raise ConfigError("stack_name is required. Set envs.<env>.stack_name or pass --stack.")

    return ResolvedEnv(
        env=env_name,
        aws_profile=str(aws_profile),
        aws_region=str(aws_region),
        stack_name=str(stack_name),
        raw=env_cfg,
    )


def sanitize_name_for_stack(name: str) -> str:
    """CloudFormation stack names allow letters, digits and hyphens only."""
    s = name.strip()
    s = re.sub(r"\s+", "-", s)
    s = re.sub(r"[^A-Za-z0-9-]", "", s)
    s = re.sub(r"-+", "-", s)
    return s.strip("-") or "RdsInitExample"


def render_config(*, env: str, aws_profile: str, aws_region: str, stack_name: str) -> dict[str, Any]:
    return {
        "version": 1,
        "default_env": env,
        "envs": {
            env: {
                "aws_profile": aws_profile,
                "aws_region": aws_region,
                "stack_name": stack_name,
                "cdk": {
                    "app": "python3 app.py",
                    "context": {},
                },
                "initializer": {
                    # Logical id of the ResourceInitializer inside the stack.
                    "construct_id": "MyRdsInit",
                    "config": {},
                },
                "resources": {},
            }
        },
    }


def render_config_yaml(*, env: str, aws_profile: str, aws_region: str, stack_name: str) -> str:
    cfg = render_config(env=env, aws_profile=aws_profile, aws_region=aws_region, stack_name=stack_name)
    return yaml.safe_dump(cfg, sort_keys=False)
