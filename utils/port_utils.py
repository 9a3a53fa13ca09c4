# utils/port_utils.py
import socket
import psutil
import logging
from typing import Optional, Dict, Tuple

logger = logging.getLogger(__name__)


def is_port_in_use(port: int, host: str = '127.0.0.1') -> bool:
    """Проверяет, занят ли порт на локальном интерфейсе"""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.settimeout(1)
        try:
            s.bind((host, port))
        except OSError:
            return True
    return False


def get_process_using_port(port: int) -> Optional[Dict]:
    """Возвращает pid и имя процесса, слушающего порт"""
    try:
        connections = psutil.net_connections(kind='inet')
    except (psutil.AccessDenied, OSError) as e:
        logger.debug(f"Cannot list connections for port {port}: {e}")
        return None

    for conn in connections:
        if not conn.laddr or conn.laddr.port != port or conn.status != psutil.CONN_LISTEN:
            continue
        if conn.pid is None:
            continue
        try:
            process = psutil.Process(conn.pid)
            return {'pid': process.pid, 'name': process.name()}
        except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
            continue
    return None


def check_port_availability(port: int, host: str = '127.0.0.1') -> Tuple[bool, str]:
    """Проверяет доступность порта и возвращает описание проблемы"""
    if not is_port_in_use(port, host):
        return True, f"Port {port} is free"

    process_info = get_process_using_port(port)
    if process_info:
        return False, f"Port {port} is used by {process_info['name']} (PID: {process_info['pid']})"
    return False, f"Port {port} is in use"
