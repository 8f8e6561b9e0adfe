#!/usr/bin/env python3
# -*- coding: utf-8 -*-
# SPDX-License-Identifier: GPL-2.0-or-later
# Copyright (C) 2020 by the Linux Foundation
#
import argparse
import logging
import phabstack
import sys

logger = phabstack.logger


class PhabstackParser(argparse.ArgumentParser):
    def error(self, message):
        # bad usage exits 1 like every other failure
        self.print_usage(sys.stderr)
        sys.stderr.write('%s: %s\n' % (self.prog, message))
        sys.exit(1)


def cmd_commits_opts(sp, helptext='Commit or A..B range to process (default: HEAD)'):
    sp.add_argument('commits', nargs='*', metavar='COMMIT', help=helptext)


def cmd_create(cmdargs):
    import phabstack.create
    phabstack.create.cmd_create(cmdargs)


def cmd_update(cmdargs):
    import phabstack.create
    phabstack.create.cmd_update(cmdargs)


def cmd_list(cmdargs):
    import phabstack.review
    phabstack.review.cmd_list(cmdargs)


def cmd_patch(cmdargs):
    import phabstack.patch
    phabstack.patch.cmd_patch(cmdargs)


def cmd_stage(cmdargs):
    import phabstack.stage
    phabstack.stage.cmd_stage(cmdargs)


def setup_parser() -> argparse.ArgumentParser:
    # noinspection PyTypeChecker
    parser = PhabstackParser(
        prog='phabstack',
        description='Keep stacks of git commits and Differential revisions in sync',
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument('--version', action='version', version=phabstack.__VERSION__)
    parser.add_argument('-v', '--verbose', action='store_true', default=False,
                        help='Show remote calls and git commands as they run')
    parser.add_argument('-q', '--quiet', action='store_true', default=False,
                        help='Output critical information only')
    parser.add_argument('-y', '--assume-yes', dest='assume_yes', action='store_true', default=False,
                        help='Answer yes to all questions')

    subparsers = parser.add_subparsers(help='sub-command help', dest='subcmd')

    # phabstack create
    sp_create = subparsers.add_parser('create', help='Create a stack of reviews, one per commit')
    sp_create.add_argument('-l', '--list', dest='listmode', action='store_true', default=False,
                           help='Confirm the whole list of commits once instead of each commit')
    sp_create.add_argument('-r', '--reviewers', action='append', default=None,
                           help='Comma-separated reviewers to add (can be repeated)')
    sp_create.add_argument('-s', '--subscribers', action='append', default=None,
                           help='Comma-separated subscribers to add (can be repeated)')
    cmd_commits_opts(sp_create)
    sp_create.set_defaults(func=cmd_create)

    # phabstack list
    sp_list = subparsers.add_parser('list', help='Show the review status of each commit')
    cmd_commits_opts(sp_list)
    sp_list.set_defaults(func=cmd_list)

    # phabstack patch
    sp_patch = subparsers.add_parser('patch', help='Apply revisions to the working tree')
    sp_patch.add_argument('-3', '--3way', dest='threeway', action='store_true', default=False,
                          help='Fall back on a 3-way merge when the patch does not apply')
    sp_patch.add_argument('--check', action='store_true', default=False,
                          help='Only check whether the revisions apply')
    sp_patch.add_argument('--index', action='store_true', default=False,
                          help='Apply to the index as well as the working tree')
    sp_patch.add_argument('revisions', nargs='+', metavar='DNNN',
                          help='Revision identifiers to apply, e.g. D1234')
    sp_patch.set_defaults(func=cmd_patch)

    # phabstack stage
    sp_stage = subparsers.add_parser('stage', help='Replay reviewed commits onto a branch with review trailers')
    sp_stage.add_argument('-b', '--branch', default=None,
                          help='Branch to stage onto (default: phabstack.default-branch, or main)')
    cmd_commits_opts(sp_stage)
    sp_stage.set_defaults(func=cmd_stage)

    # phabstack update
    sp_update = subparsers.add_parser('update', help='Submit a new diff for an existing review')
    sp_update.add_argument('commit', nargs='?', default=None,
                           help='Commit whose review to update (default: HEAD)')
    sp_update.set_defaults(func=cmd_update)

    return parser


def cmd():
    parser = setup_parser()
    cmdargs = parser.parse_args()
    logger.setLevel(logging.DEBUG)

    ch = logging.StreamHandler()
    formatter = logging.Formatter('%(message)s')
    ch.setFormatter(formatter)
    logger.addHandler(ch)

    if 'func' not in cmdargs:
        parser.print_help()
        sys.exit(1)

    config = phabstack.get_main_config()
    if cmdargs.assume_yes:
        config['assume-yes'] = 'yes'
    if cmdargs.verbose:
        config['verbose'] = 'yes'

    if cmdargs.quiet:
        ch.setLevel(logging.CRITICAL)
    elif phabstack.config_is_set('verbose'):
        ch.setLevel(logging.DEBUG)
    else:
        ch.setLevel(logging.INFO)

    try:
        cmdargs.func(cmdargs)
    except phabstack.UsageError as ex:
        parser.print_usage(sys.stderr)
        logger.critical('phabstack: %s', ex)
        sys.exit(1)
    except phabstack.PhabstackError as ex:
        logger.critical('phabstack: %s', ex)
        sys.exit(1)
    except KeyboardInterrupt:
        logger.info('')
        sys.exit(130)


if __name__ == '__main__':
    cmd()
