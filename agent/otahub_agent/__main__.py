"""OTA Hub device agent entry point.

Usage:
    python -m otahub_agent [--config CONFIG_PATH] [--server URL] [--provision] [--debug]
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
from pathlib import Path

from .agent import DeviceAgent
from .config import AgentConfig, find_config
from .provisioning import Provisioner

logger = logging.getLogger("otahub_agent")


async def _provision(config: AgentConfig, config_path: Path, tcp_port: int | None) -> None:
    provisioner = Provisioner(
        config_path.parent / "wifi.json",
        interface=config.wifi_interface,
        attempts=config.provisioning_attempts,
        timeout=config.provisioning_timeout,
    )
    if tcp_port:
        creds = await provisioner.serve_tcp(port=tcp_port)
    else:
        creds = await provisioner.serve_rfcomm(config.provisioning_channel)
    config.wifi_ssid = creds.ssid
    config.wifi_country = creds.country
    config.save(config_path)
    logger.info("Provisioning complete, joined %r", creds.ssid)


def main() -> None:
    parser = argparse.ArgumentParser(description="OTA Hub device agent")
    parser.add_argument("--config", "-c", default=None,
                        help="Path to config.json (default: auto-detect)")
    parser.add_argument("--server", default=None,
                        help="Device channel URL, e.g. ws://hub:8600/ws/device (overrides config)")
    parser.add_argument("--api-url", default=None,
                        help="HTTP API base URL (default: derived from --server)")
    parser.add_argument("--provision", action="store_true",
                        help="Run the WiFi provisioning listener before starting")
    parser.add_argument("--provision-tcp", type=int, default=None, metavar="PORT",
                        help="Serve provisioning over TCP instead of Bluetooth RFCOMM")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    args = parser.parse_args()

    level = logging.DEBUG if args.debug else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )

    config_path = Path(args.config) if args.config else find_config()
    if config_path is not None:
        config = AgentConfig.load(config_path)
        logger.info("Loaded config from %s", config_path)
    else:
        config_path = Path.home() / ".otahub-agent" / "config.json"
        config = AgentConfig()
        logger.warning("No config found: using defaults (%s)", config_path)

    if args.server:
        config.use_server(args.server, args.api_url)
    elif args.api_url:
        config.api_url = args.api_url.rstrip("/")

    loop = asyncio.new_event_loop()

    if args.provision or (config.provisioning_enabled and not config.provisioned):
        try:
            loop.run_until_complete(_provision(config, config_path, args.provision_tcp))
        except KeyboardInterrupt:
            loop.close()
            return

    agent = DeviceAgent(config, config_path=config_path)
    main_task = loop.create_task(agent.start())

    def _shutdown(sig: int) -> None:
        logger.info("Received signal %d: shutting down", sig)
        main_task.cancel()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, _shutdown, sig)

    try:
        loop.run_until_complete(main_task)
    except (KeyboardInterrupt, asyncio.CancelledError):
        pass
    except RuntimeError as e:
        logger.error("%s", e)
    finally:
        loop.run_until_complete(agent.stop())
        loop.close()


if __name__ == "__main__":
    main()
