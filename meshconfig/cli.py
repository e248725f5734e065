"""
Single entry point for meshconfig: version, validate, show, watch, serve.
"""

import argparse
import sys
import time

import yaml

from meshconfig import __version__
from meshconfig.errors import MeshConfigError, RegistrationError


def _dump(cfg) -> str:
    return yaml.safe_dump(cfg.model_dump(mode="json", by_alias=True), default_flow_style=False, sort_keys=True)


def cmd_version(_: argparse.Namespace) -> int:
    """Print version."""
    print(__version__)
    return 0


def cmd_validate(args: argparse.Namespace) -> int:
    """Merge FILE onto the defaults; print OK or the error."""
    from meshconfig.config.loader import read_mesh_config
    from meshconfig.config.schemas import default_mesh_config
    try:
        read_mesh_config(args.file, default_mesh_config())
    except MeshConfigError as e:
        print(f"{args.file}: {e}", file=sys.stderr)
        return 1
    print("OK")
    return 0


def cmd_show(args: argparse.Namespace) -> int:
    """Print the effective mesh config (defaults merged with FILE) as YAML."""
    from meshconfig.config.loader import read_mesh_config
    from meshconfig.config.schemas import default_mesh_config
    cfg = default_mesh_config()
    if args.file:
        try:
            cfg = read_mesh_config(args.file, cfg)
        except MeshConfigError as e:
            print(f"{args.file}: {e}", file=sys.stderr)
            return 1
    print(_dump(cfg), end="")
    return 0


def cmd_watch(args: argparse.Namespace) -> int:
    """Follow FILE and print the mesh config each time the cached value changes (Ctrl-C to stop)."""
    from meshconfig.cache import new_cache_from_file
    try:
        cache = new_cache_from_file(args.file, debounce=args.debounce)
    except RegistrationError as e:
        print(str(e), file=sys.stderr)
        return 1
    last = None
    try:
        while True:
            cfg = cache.get()
            if cfg is not last:
                print(_dump(cfg), flush=True)
                print("---", flush=True)
                last = cfg
            time.sleep(args.interval)
    except KeyboardInterrupt:
        pass
    finally:
        cache.close()
    return 0


def cmd_serve(args: argparse.Namespace) -> int:
    """Start the HTTP server (Uvicorn). Host/port from config/app.yaml or args."""
    from meshconfig.config.loader import get_app_settings
    settings = get_app_settings()
    host = args.host if args.host is not None else settings.host
    port = args.port if args.port is not None else settings.port
    import errno
    import uvicorn
    try:
        uvicorn.run("meshconfig.main:app", host=host, port=port)
    except OSError as e:
        if e.errno == errno.EADDRINUSE:
            print(f"Port {port} is already in use. Use another port: meshconfig serve --port {port + 1}", file=sys.stderr)
        raise
    return 0


def main() -> int:
    parser = argparse.ArgumentParser(
        prog="meshconfig",
        description="Mesh config cache: version, validate, show, watch, serve.",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    p_version = sub.add_parser("version", help="Print version")
    p_version.set_defaults(func=cmd_version)

    p_validate = sub.add_parser("validate", help="Check a mesh config file")
    p_validate.add_argument("file", help="Mesh config file (YAML or JSON)")
    p_validate.set_defaults(func=cmd_validate)

    p_show = sub.add_parser("show", help="Print the effective mesh config as YAML")
    p_show.add_argument("file", nargs="?", default=None, help="Mesh config file (default: print defaults)")
    p_show.set_defaults(func=cmd_show)

    p_watch = sub.add_parser("watch", help="Follow a mesh config file and print it on every change")
    p_watch.add_argument("file", help="Mesh config file to watch")
    p_watch.add_argument("--interval", type=float, default=1.0, help="Seconds between checks of the cached value")
    p_watch.add_argument("--debounce", type=float, default=0.1, help="File watcher debounce in seconds")
    p_watch.set_defaults(func=cmd_watch)

    # serve (host/port from config/app.yaml or --host/--port)
    p_serve = sub.add_parser("serve", help="Start the HTTP server (Uvicorn)")
    p_serve.add_argument("--host", default=None, help="Bind host (default: from config/app.yaml)")
    p_serve.add_argument("--port", type=int, default=None, help="Bind port (default: from config/app.yaml)")
    p_serve.set_defaults(func=cmd_serve)

    args = parser.parse_args()
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
