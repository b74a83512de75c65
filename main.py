import logging

from pos_app import build_services
from pos_config import configure_logging, load_config
from pos_server import create_app
from sync_worker import SyncWorker


def main():
    config = load_config()
    configure_logging(config)
    services = build_services(config)
    services.connectivity.check()
    source = services.store.load_data()
    logging.getLogger('pos').info('loaded state from %s (pending=%d)', source, services.queue.length())

    worker = SyncWorker(services.engine, services.connectivity, config.sync_interval)
    worker.start()
    app = create_app(services, config.log_level)
    try:
        app.run(host=config.host, port=config.port, debug=config.debug, use_reloader=False)
    finally:
        worker.stop(timeout=5)


if __name__ == '__main__':
    main()
