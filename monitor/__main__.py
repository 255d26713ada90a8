"""
Run the usage monitor service:

    python -m monitor

Providers are discovered from the "usage_monitor.providers" entry point
group; each entry point must resolve to a UsageProvider subclass.
"""
import logging
from importlib.metadata import entry_points

import uvicorn

from config import load_config
from monitor.app import create_app
from monitor.core.state import build_context

PROVIDER_ENTRY_POINTS = "usage_monitor.providers"

logger = logging.getLogger(__name__)


def discover_providers() -> list:
    providers = []
    for ep in entry_points(group=PROVIDER_ENTRY_POINTS):
        try:
            providers.append(ep.load()())
        except Exception as e:
            logger.warning("Failed to load provider %s: %s", ep.name, e)
    return providers


def main():
    config = load_config()
    logging.basicConfig(
        level=getattr(logging, config.log_level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    providers = discover_providers()
    logger.info("Loaded %d provider(s): %s", len(providers), ", ".join(p.id for p in providers) or "-")

    app = create_app(build_context(config, providers))
    uvicorn.run(app, host=config.api_host, port=config.api_port, log_level=config.log_level.lower())


if __name__ == "__main__":
    main()
