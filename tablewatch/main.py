"""
main.py - Main entry point for the tablewatch service
"""
import logging

import uvicorn

from tablewatch.api import create_watch_api
from tablewatch.backends.ibis_backend import IbisTableStore
from tablewatch.cdc.change_detector import ChangeDetector
from tablewatch.config import config_manager

logger = logging.getLogger(__name__)


def build_api(config):
    """Wire the table store, detector and API described by ``config``"""
    store = IbisTableStore(
        connection_uri=config.backend_uri,
        table_name=config.table_name,
        id_field=config.id_field,
        max_batch_size=config.detector.update_batch_size,
    )
    detector = ChangeDetector(store, config.detector)
    return create_watch_api(
        {config.table_name: detector},
        poll_interval=config.poll_interval,
        status_field=config.status_field,
        label_field=config.label_field,
    )


def main():
    """
    Start the tablewatch service.
    """
    logging.basicConfig(level=logging.INFO)
    config = config_manager.load_config('env')

    api = build_api(config)

    logger.info("Watching %s on %s", config.table_name, config.backend_uri)
    logger.info(
        "Polling every %ss, auto update %s",
        config.poll_interval, "on" if config.detector.auto_update_enabled else "off"
    )

    uvicorn.run(api.get_app(), host=config.host, port=config.port)


if __name__ == "__main__":
    main()
