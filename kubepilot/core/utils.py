import ipaddress
import logging
import os
import socket

import bcrypt


def setup_logger(logger_name: str) -> logging.Logger:
    logger = logging.getLogger(logger_name)
    logger.setLevel(os.getenv('KUBEPILOT_LOG_LEVEL', 'INFO').upper())
    logger.propagate = False

    formatter = logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s',
                                  datefmt='%d-%b-%y %H:%M:%S')
    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)

    if not logger.handlers:
        logger.addHandler(console_handler)

    return logger


def encrypt_password(username, password):
    bcrypted = bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt(rounds=12)).decode("utf-8")

    return f"{username}:{bcrypted}"


def unique(items) -> list:
    """Drops duplicates and empty values, keeping first-seen order."""
    return list(dict.fromkeys(x for x in items if x))


def is_ip(value: str) -> bool:
    try:
        ipaddress.ip_address(value)
    except ValueError:
        return False

    return True


def local_ips() -> set[str]:
    ips = {'127.0.0.1', '::1'}

    try:
        for info in socket.getaddrinfo(socket.gethostname(), None):
            ips.add(info[4][0])
    except socket.gaierror:
        pass

    return ips


def is_local_host(ip: str) -> bool:
    return ip in local_ips()
