"""
proxytunnel CLI
===============
Diagnostic command-line interface: negotiate one CONNECT tunnel through an
upstream proxy and report how the proxy answered.
"""

from __future__ import annotations

import sys
from pathlib import Path
from typing import Optional

import click
from dotenv import load_dotenv

from proxytunnel import __version__
from proxytunnel.config import TunnelConfig, detect_platform, load_config, save_config
from proxytunnel.core.auth import SCHEME_PREFERENCE
from proxytunnel.core.errors import (
    AuthExhaustedError,
    InvalidArgumentError,
    TunnelError,
    TunnelRefusedError,
)
from proxytunnel.core.messages import HttpHost
from proxytunnel.core.tunnel import ProxyClient
from proxytunnel.ui import (
    print_error,
    print_info,
    print_success,
    print_warning,
    setup_logging,
    show_banner,
    show_config_status,
    show_schemes,
    show_tunnel_result,
)

load_dotenv()

EXIT_REFUSED = 1
EXIT_FAILURE = 2


@click.group()
@click.option("--config", "config_path", type=click.Path(dir_okay=False, path_type=Path),
              default=None, help="Config file (default: platform config dir)")
@click.option("--verbose", "-v", is_flag=True, help="Log every round trip")
@click.version_option(__version__, prog_name="proxytunnel")
@click.pass_context
def main(ctx, config_path, verbose):
    """proxytunnel: CONNECT tunnels through authenticating proxies"""
    ctx.ensure_object(dict)
    config = load_config(config_path)
    if verbose:
        config.ui.verbose = True
    setup_logging(config.ui.verbose)
    ctx.obj["config"] = config
    ctx.obj["config_path"] = config_path


@main.command()
@click.argument("target")
@click.option("--proxy", "-x", default=None, help="Upstream proxy host:port")
@click.option("--username", "-u", default=None, help="Proxy username")
@click.option("--password", "-p", default=None, help="Proxy password")
@click.option("--domain", "-d", default=None, help="Windows domain / Kerberos realm")
@click.option("--scheme", "-s", "schemes", multiple=True,
              help="Restrict to these auth schemes (repeatable)")
@click.pass_context
def connect(ctx, target, proxy, username, password, domain, schemes):
    """Open a tunnel to TARGET (host:port) and report the outcome."""
    config: TunnelConfig = ctx.obj["config"]
    if proxy:
        config.connection.proxy = proxy
    if username:
        config.auth.username = username
    if password is not None:
        config.auth.password = password
    if domain:
        config.auth.domain = domain
    if schemes:
        config.auth.schemes = list(schemes)

    if not config.connection.proxy:
        print_error("No proxy configured. Pass --proxy or set PROXYTUNNEL_PROXY.")
        sys.exit(EXIT_FAILURE)
    if config.auth.username and not config.auth.password:
        print_warning("Username set without a password; only Negotiate/Kerberos/NTLM can use it")

    try:
        proxy_host = HttpHost.parse(config.connection.proxy)
        target_host = HttpHost.parse(target)
        client = ProxyClient.from_config(config)
    except (InvalidArgumentError, ValueError) as e:
        print_error(str(e))
        sys.exit(EXIT_FAILURE)

    show_banner()
    print_info(f"CONNECT {target_host.with_default_port().to_host_string()} "
               f"via {proxy_host.to_host_string()}")

    try:
        tunnel = client.tunnel(proxy_host, target_host)
    except AuthExhaustedError as e:
        print_error(f"Proxy authentication failed: {e.response.status_line}")
        _print_body(e)
        sys.exit(EXIT_REFUSED)
    except TunnelRefusedError as e:
        print_error(str(e))
        _print_body(e)
        sys.exit(EXIT_REFUSED)
    except TunnelError as e:
        print_error(f"{type(e).__name__}: {e}")
        sys.exit(EXIT_FAILURE)

    with tunnel:
        show_tunnel_result(
            proxy=proxy_host.to_host_string(),
            target=target_host.with_default_port().to_host_string(),
            status_line=tunnel.response.status_line,
            scheme=tunnel.scheme.value if tunnel.scheme else None,
            round_trips=tunnel.round_trips,
        )
    print_success("Tunnel closed")


def _print_body(error: TunnelRefusedError) -> None:
    body = error.response.text().strip()
    if body:
        print_info(body[:500])


@main.command()
@click.pass_context
def schemes(ctx):
    """List supported authentication schemes, strongest first."""
    config: TunnelConfig = ctx.obj["config"]
    show_schemes([s.value for s in SCHEME_PREFERENCE], config.auth.schemes)


@main.command("config")
@click.option("--save", "do_save", is_flag=True, help="Write the effective config to disk")
@click.pass_context
def config_cmd(ctx, do_save):
    """Show (or save) the effective configuration."""
    config: TunnelConfig = ctx.obj["config"]
    show_config_status({
        "proxy": config.connection.proxy,
        "username": config.auth.username,
        "password": config.auth.password,
        "domain": config.auth.domain,
        "schemes": config.auth.schemes,
        "connect_timeout": config.connection.connect_timeout,
        "request_timeout": config.connection.request_timeout,
        "platform": detect_platform()["system"],
    })
    if do_save:
        path: Optional[Path] = ctx.obj.get("config_path")
        written = save_config(config, path)
        print_success(f"Configuration saved to {written}")


if __name__ == "__main__":
    main()
