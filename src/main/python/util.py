# SPDX-License-Identifier: GPL-2.0-or-later
import logging
import os
import pathlib
from logging.handlers import RotatingFileHandler

MSG_LEN = 32

LOG_FORMAT = "%(asctime)s - %(levelname)s - %(module)s:%(lineno)d - %(message)s"


def chunks(data, sz):
    for i in range(0, len(data), sz):
        yield data[i:i+sz]


def pad_report(msg, length=MSG_LEN):
    """ Pads a report to the fixed transport length """
    if len(msg) > length:
        raise RuntimeError("message must be at most {} bytes".format(length))
    return bytes(msg) + b"\x00" * (length - len(msg))


def init_logger(directory=None, level=logging.INFO):
    logging.basicConfig(level=level)
    if directory is None:
        return
    pathlib.Path(directory).mkdir(parents=True, exist_ok=True)
    path = os.path.join(directory, "vial.log")
    handler = RotatingFileHandler(path, maxBytes=5 * 1024 * 1024, backupCount=5)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    logging.getLogger().addHandler(handler)
