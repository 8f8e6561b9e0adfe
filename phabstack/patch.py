#!/usr/bin/env python3
# -*- coding: utf-8 -*-
# SPDX-License-Identifier: GPL-2.0-or-later
# Copyright (C) 2020 by the Linux Foundation
#
import argparse

import phabstack
import phabstack.conduit

logger = phabstack.logger


def cmd_patch(cmdargs: argparse.Namespace) -> None:
    for identifier in cmdargs.revisions:
        phabstack.validate_identifier(identifier)

    repo = phabstack.GitRepo()
    client = phabstack.conduit.get_client(repo)
    options = {
        'three_way': cmdargs.threeway,
        'check_only': cmdargs.check,
        'index': cmdargs.index,
    }
    for identifier in cmdargs.revisions:
        client.apply_patch(identifier, options)
        if cmdargs.check:
            logger.info('%s applies cleanly', identifier)
        else:
            logger.info('Applied %s', identifier)
