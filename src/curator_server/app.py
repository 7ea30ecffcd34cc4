"""Litestar application factory and CLI entry point."""

from __future__ import annotations

import argparse
import asyncio
import sys
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from litestar import Litestar
from litestar.datastructures import State
from litestar.di import Provide

from curator_server.config import ConfigLoader, Settings
from curator_server.controllers.fleet import FleetController
from curator_server.controllers.health import HealthController
from curator_server.controllers.ws import websocket_endpoint
from curator_server.dao.host_dao import HostDAO
from curator_server.plugins.contracts.transport import TransportAdapter
from curator_server.plugins.db_membership import DbMembershipStore
from curator_server.plugins.demo_transport import DemoTransport
from curator_server.plugins.http_transport import HttpTransport
from curator_server.resources.fleet import FleetResource
from curator_server.resources.health import HealthResource
from curator_server.schemas.fleet import ActionKind, Host
from curator_server.services.action_dispatcher import ActionDispatcher
from curator_server.services.fleet_store import FleetStore
from curator_server.services.host_service import HostService
from curator_server.services.poller import Poller
from curator_server.services.reconciler import Reconciler
from curator_server.utils.db import Database
from curator_server.utils.log import LogConfig


class AppFactory:
    """Builds and configures the Litestar application. All methods are static."""

    @staticmethod
    def build_transport(settings: Settings) -> TransportAdapter:
        """Select the transport named by settings."""
        if settings.transport == "demo":
            return DemoTransport()
        return HttpTransport()

    @staticmethod
    def _build(settings: Settings) -> State:
        """Construct the full object graph once.

        pool → host_dao → host_service → membership ─────────────┐
        store → reconciler ─┬→ poller ──────────────────────────┤
        transport ──────────┴→ dispatcher ──────────────────────┴→ FleetResource
        store → HealthResource
        """
        pool = Database.init(settings.database_url)
        membership = DbMembershipStore(HostService(HostDAO(pool)))
        transport = AppFactory.build_transport(settings)
        store = FleetStore()
        reconciler = Reconciler(store, failure_threshold=settings.failure_threshold)
        poller = Poller(
            transport,
            reconciler,
            base_interval=settings.poll_interval_seconds,
            intervals=settings.poll_intervals,
            max_interval=settings.poll_max_interval_seconds,
            timeout=settings.transport_timeout_seconds,
        )
        dispatcher = ActionDispatcher(
            store,
            reconciler,
            transport,
            max_attempts=settings.action_max_attempts,
            backoff_seconds=settings.action_backoff_seconds,
            timeout=settings.transport_timeout_seconds,
        )
        fleet_resource = FleetResource(
            store=store,
            reconciler=reconciler,
            poller=poller,
            dispatcher=dispatcher,
            membership=membership,
            transport=transport,
            seed_hosts=DemoTransport.demo_hosts() if settings.seed_demo_hosts else None,
        )
        return State({
            "health": HealthResource(store),
            "fleet": fleet_resource,
        })

    @staticmethod
    @asynccontextmanager
    async def _lifespan(app: Litestar) -> AsyncIterator[None]:
        """Create tables and start polling on startup; stop and dispose on shutdown."""
        fleet_resource: FleetResource = app.state.fleet
        await Database.create_schema()
        await fleet_resource.start()
        try:
            yield
        finally:
            await fleet_resource.stop()
            await Database.close()

    @staticmethod
    def provide_health(state: State) -> HealthResource:
        """Provide the pre-built HealthResource from app state."""
        health_resource: HealthResource = state.health
        return health_resource

    @staticmethod
    def provide_fleet(state: State) -> FleetResource:
        """Provide the pre-built FleetResource from app state."""
        fleet_resource: FleetResource = state.fleet
        return fleet_resource

    @staticmethod
    def create_app(settings: Settings | None = None) -> Litestar:
        """Create and configure the Litestar application."""
        if settings is None:
            settings = ConfigLoader.load_settings()
        LogConfig.configure(settings.log_level)
        return Litestar(
            route_handlers=[HealthController, FleetController, websocket_endpoint],
            state=AppFactory._build(settings),
            lifespan=[AppFactory._lifespan],
            dependencies={
                "health_resource": Provide(AppFactory.provide_health, sync_to_thread=False),
                "fleet_resource": Provide(AppFactory.provide_fleet, sync_to_thread=False),
            },
        )


# Public alias so conftest / uvicorn can call create_app() without knowing AppFactory.
create_app = AppFactory.create_app


class CLI:
    """Command-line interface: serve the fleet, or edit membership offline."""

    @staticmethod
    def _build_parser() -> argparse.ArgumentParser:
        parser = argparse.ArgumentParser(
            prog="curator-server", description="Hosting Curator fleet server",
        )
        commands = parser.add_subparsers(dest="command")

        serve = commands.add_parser("run", help="Serve the fleet API and start polling")
        serve.add_argument("--host", default="0.0.0.0")
        serve.add_argument("--port", type=int, default=8000)
        serve.add_argument("--reload", action="store_true", help="Auto-reload on file changes")

        hosts = commands.add_parser("hosts", help="Edit fleet membership")
        hosts_commands = hosts.add_subparsers(dest="hosts_command")
        hosts_commands.add_parser("list", help="Print configured hosts")
        add = hosts_commands.add_parser("add", help="Add a host")
        add.add_argument("id")
        add.add_argument("name")
        add.add_argument("address")
        add.add_argument("--class", dest="host_class", default="default")
        add.add_argument(
            "--capability",
            dest="capabilities",
            action="append",
            choices=[kind.value for kind in ActionKind],
            help="Repeat per supported action (default: all)",
        )
        remove = hosts_commands.add_parser("remove", help="Remove a host")
        remove.add_argument("id")

        return parser

    @staticmethod
    async def _edit_hosts(args: argparse.Namespace, settings: Settings) -> int:
        """Run one membership command against the configured database."""
        service = HostService(HostDAO(Database.init(settings.database_url)))
        try:
            await Database.create_schema()
            if args.hosts_command == "add":
                fields: dict[str, object] = {
                    "id": args.id,
                    "name": args.name,
                    "address": args.address,
                    "host_class": args.host_class,
                }
                if args.capabilities:
                    fields["capabilities"] = args.capabilities
                host = await service.save_host(Host.model_validate(fields))
                print(f"added {host.id}")
            elif args.hosts_command == "remove":
                if not await service.delete_host(args.id):
                    print(f"Error: no host {args.id}", file=sys.stderr)
                    return 1
                print(f"removed {args.id}")
            else:
                for host in await service.list_hosts():
                    capabilities = ",".join(sorted(c.value for c in host.capabilities))
                    print(f"{host.id}\t{host.name}\t{host.address}\t{host.host_class}\t{capabilities}")
        finally:
            await Database.close()
        return 0

    @staticmethod
    def main(argv: list[str] | None = None) -> None:
        """CLI entry point. Catches all exceptions and exits cleanly."""
        parser = CLI._build_parser()
        args = parser.parse_args(argv)

        if args.command is None:
            parser.print_help()
            sys.exit(1)

        try:
            if args.command == "run":
                import uvicorn

                uvicorn.run(
                    "curator_server.app:create_app",
                    factory=True,
                    host=args.host,
                    port=args.port,
                    reload=args.reload,
                )
            else:
                code = asyncio.run(CLI._edit_hosts(args, ConfigLoader.load_settings()))
                if code:
                    sys.exit(code)
        except KeyboardInterrupt:
            pass
        except Exception as error:
            print(f"Error: {error}", file=sys.stderr)
            sys.exit(1)


if __name__ == "__main__":
    CLI.main()
