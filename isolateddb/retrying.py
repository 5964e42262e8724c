# Copyright (c) 2021 Cisco Systems, Inc. and its affiliates
# All rights reserved.

import logging

from retry.api import retry_call

from isolateddb.exceptions import OperationCancelled, check_cancelled

LOG = logging.getLogger(__name__)


def perform_with_retry(
    func,
    attempts,
    delay=0,
    exceptions=Exception,
    cancel=None,
    fargs=None,
    fkwargs=None,
    logger=LOG,
):
    """Call `func` until it succeeds, at most `attempts` times.

    Every failure except the last is logged as a warning and followed by
    a fixed `delay` (in seconds). The last failure is re-raised unchanged.
    If `cancel` (a threading.Event) is set, the next attempt raises
    OperationCancelled instead of calling `func`. OperationCancelled is
    never retried, whatever `exceptions` says.
    """
    cancelled = []

    def attempt(*args, **kwargs):
        try:
            check_cancelled(cancel)
            return func(*args, **kwargs)
        except OperationCancelled as e:
            cancelled.append(e)
            return None

    result = retry_call(
        attempt,
        fargs=fargs,
        fkwargs=fkwargs,
        exceptions=exceptions,
        tries=attempts,
        delay=delay,
        logger=logger,
    )
    if cancelled:
        raise cancelled[0]
    return result
