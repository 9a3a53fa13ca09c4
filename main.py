# main.py
import sys
import time
import logging
import argparse
from pathlib import Path


def setup_logging(level=logging.INFO):
    """Настраивает логирование ДО всех операций с ротацией"""
    from core.config_manager import get_app_data_dir
    from logging.handlers import RotatingFileHandler

    app_data_dir = get_app_data_dir()
    logs_dir = app_data_dir / "logs"
    logs_dir.mkdir(exist_ok=True)

    log_file = logs_dir / "offline_proxy.log"

    # Ротирующий обработчик: макс 5MB, 5 резервных копий
    file_handler = RotatingFileHandler(
        log_file,
        maxBytes=5 * 1024 * 1024,  # 5MB
        backupCount=5,
        encoding='utf-8'
    )
    file_handler.setFormatter(
        logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s')
    )

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(
        logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s')
    )

    logging.basicConfig(
        level=level,
        handlers=[console_handler, file_handler]
    )


logger = logging.getLogger(__name__)


def setup_exception_handler():
    """Настраивает глобальный обработчик исключений"""

    def exception_handler(exc_type, exc_value, exc_traceback):
        if issubclass(exc_type, KeyboardInterrupt):
            sys.__excepthook__(exc_type, exc_value, exc_traceback)
            return

        logger.critical("Необработанное исключение:",
                        exc_info=(exc_type, exc_value, exc_traceback))

    sys.excepthook = exception_handler


def parse_args(argv=None):
    parser = argparse.ArgumentParser(
        prog='offline-proxy',
        description='Local caching proxy with offline support for the Job Connect web app'
    )
    parser.add_argument('--upstream', help='Origin of the web application (e.g. https://app.example.com)')
    parser.add_argument('--port', type=int, help='Local port to listen on')
    parser.add_argument('--config', type=Path, help='Path to config.json')
    parser.add_argument('--save', action='store_true', help='Persist command line overrides to the config file')
    parser.add_argument('--debug', action='store_true', help='Enable debug logging')
    return parser.parse_args(argv)


def main(argv=None):
    """Основная функция приложения"""
    args = parse_args(argv)

    setup_logging(logging.DEBUG if args.debug else logging.INFO)
    setup_exception_handler()

    from core.config_manager import ConfigManager, get_config
    from core.proxy_manager import ProxyManager

    config = ConfigManager(args.config) if args.config else get_config()
    if args.upstream:
        config.set('proxy.upstream_url', args.upstream)
    if args.port:
        config.set('proxy.local_port', args.port)
    if args.save:
        config.save()

    logger.info("🚀 Запуск Offline Proxy")

    proxy_manager = ProxyManager(config)
    if not proxy_manager.start():
        logger.error(
            f"❌ Не удалось запустить прокси: {proxy_manager.last_error_type}\n"
            f"   {proxy_manager.last_error_details or ''}"
        )
        return 1

    try:
        while proxy_manager.is_running:
            time.sleep(0.5)
    except KeyboardInterrupt:
        logger.info("🛑 Завершение работы приложения")
    finally:
        proxy_manager.stop()

    return 0


if __name__ == "__main__":
    sys.exit(main())
