from __future__ import annotations

import json
import os
import shlex
import shutil
import subprocess
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from rdsinit_cli.config import ConfigError, ResolvedEnv, find_config_path, load_config_dict, resolve_env, save_config_dict
from resource_initializer.identity import build_payload, physical_resource_id

DEFAULT_CONSTRUCT_ID = "MyRdsInit"
RESPONSE_OUTPUT_KEY = "RdsInitFnResponse"


@dataclass(frozen=True)
class Ctx:
    config_path: Path
    cfg: dict[str, Any]
    env: ResolvedEnv


def _eprint(msg: str) -> None:
    print(msg, file=sys.stderr)


def _fmt_cmd(cmd: list[str]) -> str:
    return " ".join(shlex.quote(c) for c in cmd)


def load_ctx(
    *,
    config_override: str | None,
    env: str | None,
    profile: str | None,
    region: str | None,
    stack: str | None,
) -> Ctx:
    p = find_config_path(config_override)
    if p is None:
        raise ConfigError("No config found. Create one with: rdsinit config init")
    cfg = load_config_dict(p)
    resolved = resolve_env(cfg, env=env, profile_override=profile, region_override=region, stack_override=stack)
    return Ctx(config_path=p, cfg=cfg, env=resolved)


def cmd_env(resolved: ResolvedEnv) -> dict[str, str]:
    # The CDK CLI reads the default region for environment-agnostic stacks from these.
    return {
        "AWS_PROFILE": resolved.aws_profile,
        "AWS_REGION": resolved.aws_region,
        "AWS_DEFAULT_REGION": resolved.aws_region,
        "CDK_DEFAULT_REGION": resolved.aws_region,
    }


def aws_cli_args(resolved: ResolvedEnv) -> list[str]:
    return ["--profile", resolved.aws_profile, "--region", resolved.aws_region]


def _section(ctx: Ctx, name: str) -> dict[str, Any]:
    v = ctx.env.raw.get(name)
    return v if isinstance(v, dict) else {}


def cdk_cli_args(ctx: Ctx) -> list[str]:
    cdk_cfg = _section(ctx, "cdk")
    args = ["--profile", ctx.env.aws_profile]
    app = cdk_cfg.get("app")
    if app:
        args.extend(["--app", str(app)])
    args.extend(["--context", f"stackName={ctx.env.stack_name}"])
    extra = cdk_cfg.get("context") or {}
    if isinstance(extra, dict):
        for k, v in extra.items():
            args.extend(["--context", f"{k}={v}"])
    return args


def run_cmd(
    cmd: list[str],
    *,
    env: dict[str, str] | None,
    dry_run: bool,
    check: bool = True,
    cwd: str | None = None,
) -> int:
    _eprint(f"$ {_fmt_cmd(cmd)}")
    if dry_run:
        return 0
    merged = os.environ.copy()
    if env:
        merged.update(env)
    p = subprocess.run(cmd, env=merged, cwd=cwd)
    if check and p.returncode != 0:
        raise subprocess.CalledProcessError(p.returncode, cmd)
    return p.returncode


def run_json(
    cmd: list[str],
    *,
    env: dict[str, str] | None,
    dry_run: bool,
    cwd: str | None = None,
) -> Any:
    _eprint(f"$ {_fmt_cmd(cmd)}")
    if dry_run:
        return {}
    merged = os.environ.copy()
    if env:
        merged.update(env)
    out = subprocess.check_output(cmd, env=merged, cwd=cwd)
    return json.loads(out.decode("utf-8"))


def require_tools(names: Iterable[str]) -> list[str]:
    missing: list[str] = []
    for n in names:
        if shutil.which(n) is None:
            missing.append(n)
    return missing


# ---- cdk lifecycle ----


def cdk_synth(ctx: Ctx, *, dry_run: bool) -> int:
    cmd = ["cdk", "synth", *cdk_cli_args(ctx), ctx.env.stack_name]
    return run_cmd(cmd, env=cmd_env(ctx.env), dry_run=dry_run)


def cdk_diff(ctx: Ctx, *, dry_run: bool) -> int:
    cmd = ["cdk", "diff", *cdk_cli_args(ctx), ctx.env.stack_name]
    return run_cmd(cmd, env=cmd_env(ctx.env), dry_run=dry_run)


def cdk_deploy(ctx: Ctx, *, dry_run: bool, require_approval: str) -> int:
    cmd = [
        "cdk",
        "deploy",
        *cdk_cli_args(ctx),
        "--require-approval",
        require_approval,
        ctx.env.stack_name,
    ]
    return run_cmd(cmd, env=cmd_env(ctx.env), dry_run=dry_run)


def cdk_destroy(ctx: Ctx, *, dry_run: bool, yes: bool) -> int:
    if dry_run and not yes:
        # In dry-run, don't force confirmation; just show what would happen.
        yes = True
    if not yes:
        _eprint(f"About to destroy stack: {ctx.env.stack_name}")
        _eprint("Re-run with --yes to confirm.")
        return 2
    cmd = ["cdk", "destroy", *cdk_cli_args(ctx), "--force", ctx.env.stack_name]
    return run_cmd(cmd, env=cmd_env(ctx.env), dry_run=dry_run)


# ---- stack outputs ----


def aws_stack_outputs(ctx: Ctx, *, dry_run: bool) -> dict[str, str]:
    cmd = [
        "aws",
        "cloudformation",
        "describe-stacks",
        *aws_cli_args(ctx.env),
        "--stack-name",
        ctx.env.stack_name,
        "--output",
        "json",
    ]
    data = run_json(cmd, env=cmd_env(ctx.env), dry_run=dry_run)
    outs: dict[str, str] = {}
    stacks = (data or {}).get("Stacks") or []
    if not stacks:
        return outs
    for o in stacks[0].get("Outputs") or []:
        k = o.get("OutputKey")
        v = o.get("OutputValue")
        if isinstance(k, str) and isinstance(v, str):
            outs[k] = v
    return outs


def monitor_outputs(ctx: Ctx, *, dry_run: bool, write_config: bool) -> int:
    outs = aws_stack_outputs(ctx, dry_run=dry_run)
    print(json.dumps({"stack": ctx.env.stack_name, "outputs": outs}, indent=2, sort_keys=True))

    if write_config and not dry_run:
        envs = ctx.cfg.setdefault("envs", {})
        if isinstance(envs, dict):
            env_cfg = envs.setdefault(ctx.env.env, {})
            if isinstance(env_cfg, dict):
                res = env_cfg.setdefault("resources", {})
                if isinstance(res, dict):
                    res.update(outs)
                save_config_dict(ctx.config_path, ctx.cfg)
                _eprint(f"Updated resources in config: {ctx.config_path}")
    return 0


def parse_initializer_response(raw: str) -> dict[str, Any]:
    """Decode the handler response surfaced by the ``RdsInitFnResponse`` output."""
    try:
        obj = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ConfigError(f"Initializer response is not JSON: {raw[:200]!r}") from e
    # The invoke payload may arrive JSON-encoded twice.
    if isinstance(obj, str):
        return parse_initializer_response(obj)
    if not isinstance(obj, dict) or "status" not in obj:
        raise ConfigError("Initializer response has no status field")
    return obj


def initializer_status(ctx: Ctx, *, dry_run: bool) -> int:
    """Exit 0 when the last initialization reported OK, 1 when it reported ERROR."""
    outs = aws_stack_outputs(ctx, dry_run=dry_run)
    if dry_run:
        return 0
    raw = outs.get(RESPONSE_OUTPUT_KEY)
    if not raw:
        raise ConfigError(f"Missing stack output '{RESPONSE_OUTPUT_KEY}'. Did you deploy the stack?")
    resp = parse_initializer_response(raw)
    print(json.dumps(resp, indent=2, sort_keys=True))
    if resp.get("status") != "OK":
        _eprint(f"Initializer reported {resp.get('status')}: {resp.get('message') or ''}")
        return 1
    return 0


# ---- identity / invocation ----


def default_initializer_config(stack_name: str) -> dict[str, Any]:
    # Same secret naming convention as demos/rds_init_example.py.
    return {"credsSecretName": f"/{stack_name}/rds/creds/mysql-01".lower()}


def initializer_settings(ctx: Ctx) -> dict[str, Any]:
    init_cfg = _section(ctx, "initializer")
    config = init_cfg.get("config")
    if not isinstance(config, dict) or not config:
        config = default_initializer_config(ctx.env.stack_name)
    return {
        "construct_id": str(init_cfg.get("construct_id") or DEFAULT_CONSTRUCT_ID),
        "config": config,
    }


def compute_token(*, stack_name: str) -> dict[str, str]:
    """Synthesize the example stack in-process and report its initializer identity.

    Uses the same construct code as ``cdk synth``, so the token is derived from
    the image asset that would be deployed. Needs Node.js, no AWS access.
    """
    from aws_cdk import App

    from demos.rds_init_example import RdsInitStackExample

    stack = RdsInitStackExample(App(), stack_name)
    initializer = stack.initializer
    construct_id = initializer.node.id
    return {
        "stack": stack_name,
        "construct_id": construct_id,
        "image_asset_hash": initializer.image.asset_hash,
        "payload": initializer.payload,
        "function_hash": initializer.function_hash,
        "identity_token": initializer.identity_token,
        "physical_resource_id": physical_resource_id(construct_id, initializer.identity_token),
    }


def invoke_initializer(ctx: Ctx, *, dry_run: bool, config: dict[str, Any] | None) -> int:
    """Invoke the deployed handler directly, outside of a deployment."""
    settings = initializer_settings(ctx)
    fn_name = f"{settings['construct_id']}ResourceInitializerFn"
    payload = build_payload(config if config is not None else settings["config"])

    _eprint(f"Invoking {fn_name} ({ctx.env.aws_region}) with payload {payload}")
    if dry_run:
        return 0

    try:
        session = boto3.Session(profile_name=ctx.env.aws_profile, region_name=ctx.env.aws_region)
        client = session.client("lambda")
        resp = client.invoke(FunctionName=fn_name, Payload=payload.encode("utf-8"))
    except (BotoCoreError, ClientError) as e:
        _eprint(f"Invoke of {fn_name} failed: {e}")
        return 1
    body = resp["Payload"].read().decode("utf-8")

    if resp.get("FunctionError"):
        _eprint(f"Function error ({resp['FunctionError']}): {body}")
        return 1

    result = parse_initializer_response(body)
    print(json.dumps(result, indent=2, sort_keys=True))
    return 0 if result.get("status") == "OK" else 1


def doctor(ctx: Ctx, *, dry_run: bool) -> int:
    missing = require_tools(["aws", "cdk", "docker"])
    if missing:
        _eprint(f"Missing required tools on PATH: {', '.join(missing)}")
        return 2

    # Validate credentials.
    run_cmd(["aws", "sts", "get-caller-identity", *aws_cli_args(ctx.env)], env=cmd_env(ctx.env), dry_run=dry_run)
    _eprint("doctor OK")
    return 0
