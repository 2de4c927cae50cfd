#!/usr/bin/env python3
# Copyright (C) 2019 Checkmk GmbH - License: GNU General Public License v2
# This file is part of Checkmk (https://checkmk.com). It is subject to the terms and
# conditions defined in the file COPYING, which is part of this source code package.

import logging
import pathlib

logger = logging.getLogger("workload-gateway")

_FORMAT = "%(asctime)s [%(levelno)s] [%(name)s %(process)d] %(message)s"


def _level(verbosity: int) -> int:
    """
    >>> _level(0) == logging.INFO
    True
    >>> _level(3) == logging.DEBUG
    True
    """
    return logging.DEBUG if verbosity > 0 else logging.INFO


def configure_logger(path: pathlib.Path | None, verbosity: int = 0) -> None:
    handler: logging.Handler = (
        logging.StreamHandler() if path is None else logging.FileHandler(path, encoding="UTF-8")
    )
    handler.setFormatter(logging.Formatter(_FORMAT))
    for existing in list(logger.handlers):
        logger.removeHandler(existing)
        existing.close()
    logger.addHandler(handler)
    logger.setLevel(_level(verbosity))
