import json
import os
from pathlib import Path
from subprocess import CalledProcessError
from typing import Any, NoReturn

import typer

from rdsinit_cli import __version__
from rdsinit_cli.config import (
    ConfigError,
    default_config_path,
    find_config_path,
    render_config_yaml,
    sanitize_name_for_stack,
)
from rdsinit_cli.ops import (
    cdk_deploy,
    cdk_destroy,
    cdk_diff,
    cdk_synth,
    compute_token,
    doctor,
    initializer_status,
    invoke_initializer,
    load_ctx,
    monitor_outputs,
)


def _parse_config_json(raw: str | None) -> dict[str, Any] | None:
    if raw is None:
        return None
    try:
        obj = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ConfigError(f"--config-json is not valid JSON: {e}") from e
    if not isinstance(obj, dict):
        raise ConfigError("--config-json must be a JSON object")
    return obj


def build_app() -> typer.Typer:
    app = typer.Typer(
        add_completion=True,
        help="rdsinit CLI: deploy and inspect the RDS initializer stack",
        invoke_without_command=True,
        no_args_is_help=True,
    )

    def _die(msg: str, code: int = 2) -> NoReturn:
        typer.echo(f"ERROR: {msg}", err=True)
        raise typer.Exit(code=code)

    def _load(ctx: typer.Context):
        try:
            return load_ctx(
                config_override=ctx.obj.get("config"),
                env=ctx.obj.get("env"),
                profile=ctx.obj.get("profile"),
                region=ctx.obj.get("region"),
                stack=ctx.obj.get("stack"),
            )
        except ConfigError as e:
            _die(str(e), code=2)

    def _dry(ctx: typer.Context, dry_run: bool) -> bool:
        return bool(dry_run) or bool(ctx.obj.get("dry_run"))

    @app.callback()
    def _root(
        ctx: typer.Context,
        config: str | None = typer.Option(None, "--config", help="Path to config YAML"),
        env: str | None = typer.Option(None, "--env", help="Environment name (from config)"),
        profile: str | None = typer.Option(None, "--profile", help="AWS profile override"),
        region: str | None = typer.Option(None, "--region", help="AWS region override"),
        stack: str | None = typer.Option(None, "--stack", help="Stack name override"),
        dry_run: bool = typer.Option(False, "--dry-run", help="Print commands, do not execute"),
        version: bool = typer.Option(False, "--version", help="Print version and exit"),
    ) -> None:
        if version:
            typer.echo(__version__)
            raise typer.Exit(code=0)
        ctx.obj = {
            "config": config,
            "env": env,
            "profile": profile,
            "region": region,
            "stack": stack,
            "dry_run": dry_run,
        }

    # ---- config ----
    cfg_app = typer.Typer(help="Configuration management")
    app.add_typer(cfg_app, name="config")

    @cfg_app.command("path")
    def cfg_path(ctx: typer.Context) -> None:
        p = find_config_path(ctx.obj.get("config"))
        if p is None:
            raise typer.Exit(code=1)
        typer.echo(str(p))

    @cfg_app.command("init")
    def cfg_init(
        write: str | None = typer.Option(None, "--write", help="Write config to this path"),
        env: str = typer.Option("dev", "--env"),
        profile: str | None = typer.Option(None, "--profile"),
        region: str | None = typer.Option(None, "--region"),
        stack: str | None = typer.Option(None, "--stack"),
    ) -> None:
        write_path = Path(write).expanduser().resolve() if write else default_config_path()
        write_path.parent.mkdir(parents=True, exist_ok=True)

        aws_profile = profile or os.getenv("AWS_PROFILE") or ""
        aws_region = region or os.getenv("AWS_REGION") or os.getenv("AWS_DEFAULT_REGION") or ""
        stack_name = sanitize_name_for_stack(stack or f"RdsInitExample-{env}")

        if not aws_profile or aws_profile == "default":
            _die("--profile (non-default) is required for config init", code=2)
        if not aws_region:
            _die("--region is required for config init", code=2)

        txt = render_config_yaml(env=env, aws_profile=aws_profile, aws_region=aws_region, stack_name=stack_name)
        write_path.write_text(txt, encoding="utf-8")
        typer.echo(f"Wrote config: {write_path}")

    @cfg_app.command("validate")
    def cfg_validate(ctx: typer.Context) -> None:
        _load(ctx)

    @cfg_app.command("show")
    def cfg_show(ctx: typer.Context) -> None:
        c = _load(ctx)
        typer.echo(
            json.dumps(
                {
                    "config_path": str(c.config_path),
                    "env": c.env.env,
                    "aws_profile": c.env.aws_profile,
                    "aws_region": c.env.aws_region,
                    "stack_name": c.env.stack_name,
                    "env_config": c.env.raw,
                },
                indent=2,
                sort_keys=True,
            )
        )

    # ---- lifecycle ----
    @app.command("synth")
    def _synth(
        ctx: typer.Context,
        dry_run: bool = typer.Option(False, "--dry-run", help="Print commands, do not execute"),
    ) -> None:
        c = _load(ctx)
        raise typer.Exit(code=cdk_synth(c, dry_run=_dry(ctx, dry_run)))

    @app.command("diff")
    def _diff(
        ctx: typer.Context,
        dry_run: bool = typer.Option(False, "--dry-run", help="Print commands, do not execute"),
    ) -> None:
        c = _load(ctx)
        raise typer.Exit(code=cdk_diff(c, dry_run=_dry(ctx, dry_run)))

    @app.command("deploy")
    def _deploy(
        ctx: typer.Context,
        require_approval: str = typer.Option(
            "broadening", "--require-approval", help="never | any-change | broadening"
        ),
        dry_run: bool = typer.Option(False, "--dry-run", help="Print commands, do not execute"),
    ) -> None:
        if require_approval not in ("never", "any-change", "broadening"):
            _die(f"invalid --require-approval: {require_approval}", code=2)
        c = _load(ctx)
        raise typer.Exit(code=cdk_deploy(c, dry_run=_dry(ctx, dry_run), require_approval=require_approval))

    @app.command("destroy")
    def _destroy(
        ctx: typer.Context,
        yes: bool = typer.Option(False, "--yes", help="Confirm deletion"),
        dry_run: bool = typer.Option(False, "--dry-run", help="Print commands, do not execute"),
    ) -> None:
        c = _load(ctx)
        raise typer.Exit(code=cdk_destroy(c, dry_run=_dry(ctx, dry_run), yes=yes))

    @app.command("outputs")
    def _outputs(
        ctx: typer.Context,
        write_config: bool = typer.Option(False, "--write-config"),
        dry_run: bool = typer.Option(False, "--dry-run", help="Print commands, do not execute"),
    ) -> None:
        c = _load(ctx)
        raise typer.Exit(code=monitor_outputs(c, dry_run=_dry(ctx, dry_run), write_config=write_config))

    @app.command("status", help="Inspect the initializer response recorded in the stack outputs")
    def _status(
        ctx: typer.Context,
        dry_run: bool = typer.Option(False, "--dry-run", help="Print commands, do not execute"),
    ) -> None:
        c = _load(ctx)
        raise typer.Exit(code=initializer_status(c, dry_run=_dry(ctx, dry_run)))

    @app.command("invoke", help="Invoke the deployed initializer function directly")
    def _invoke(
        ctx: typer.Context,
        config_json: str | None = typer.Option(None, "--config-json", help="Override config (JSON object)"),
        dry_run: bool = typer.Option(False, "--dry-run", help="Print commands, do not execute"),
    ) -> None:
        c = _load(ctx)
        config = _parse_config_json(config_json)
        raise typer.Exit(code=invoke_initializer(c, dry_run=_dry(ctx, dry_run), config=config))

    @app.command("token", help="Synthesize the stack locally and print the initializer identity token (no AWS access)")
    def _token(ctx: typer.Context) -> None:
        # Works without a config file; the stack name then comes from --stack.
        if find_config_path(ctx.obj.get("config")) is not None:
            stack_name = _load(ctx).env.stack_name
        else:
            stack_name = ctx.obj.get("stack") or "RdsInitExample"
        try:
            out = compute_token(stack_name=stack_name)
        except FileNotFoundError as e:
            _die(str(e), code=2)
        typer.echo(json.dumps(out, indent=2, sort_keys=True))

    @app.command("doctor")
    def _doctor(
        ctx: typer.Context,
        dry_run: bool = typer.Option(False, "--dry-run", help="Print commands, do not execute"),
    ) -> None:
        c = _load(ctx)
        raise typer.Exit(code=doctor(c, dry_run=_dry(ctx, dry_run)))

    return app


def run(argv: list[str]) -> int:
    app = build_app()
    # Execute without letting Click `sys.exit()`.
    command = typer.main.get_command(app)
    try:
        rv = command.main(args=argv, prog_name="rdsinit", standalone_mode=False)
        # With standalone_mode=False, Click returns the Exit code instead of exiting.
        if isinstance(rv, int):
            return int(rv)
        return 0
    except ConfigError as e:
        typer.echo(f"ERROR: {e}", err=True)
        return 2
    except CalledProcessError as e:
        typer.echo(f"ERROR: command failed ({e.returncode}): {e.cmd}", err=True)
        return int(e.returncode)
    except SystemExit as e:  # pragma: no cover
        return int(e.code or 0)
