#!/usr/bin/env python3
# -*- coding: utf-8 -*-
# SPDX-License-Identifier: GPL-2.0-or-later
# Copyright (C) 2020 by the Linux Foundation
#
import argparse
import re

import phabstack
import phabstack.conduit
import phabstack.review

from typing import List, Optional

logger = phabstack.logger

TRAILER_LINE_RE = re.compile(r'^(?:[\w-]+|%s|%s):[ \t]' % (phabstack.REVIEWED_BY_NAME, phabstack.TRAILER_NAME))


def compose_staged_message(client, commit: phabstack.Commit) -> str:
    message = commit.message.rstrip('\n')
    try:
        review = phabstack.review.resolve(client, commit)
    except phabstack.AmbiguousReviewError as ex:
        logger.warning('WARNING: %s', ex)
        logger.warning('         not adding review trailers to %s', commit.short)
        return message + '\n'
    if review is None:
        logger.info('  %s has no review', commit.short)
        return message + '\n'

    trailers = list()
    existing = message.splitlines()
    reviewers = phabstack.review.accepted_reviewers(client, review.id)
    if reviewers and not any(x.startswith('%s:' % phabstack.REVIEWED_BY_NAME) for x in existing):
        trailers.append('%s: %s' % (phabstack.REVIEWED_BY_NAME, ', '.join(sorted(reviewers))))
    if not phabstack.TRAILER_RE.search(message):
        trailers.append('%s: %s' % (phabstack.TRAILER_NAME, client.revision_url(review.id)))
    if not trailers:
        return message + '\n'

    # Join an existing trailer block instead of starting a new paragraph
    paragraphs = re.split(r'\n\s*\n', message)
    if len(paragraphs) > 1 and all(TRAILER_LINE_RE.match(x) for x in paragraphs[-1].splitlines()):
        return message + '\n' + '\n'.join(trailers) + '\n'
    return message + '\n\n' + '\n'.join(trailers) + '\n'


def checkout_target(repo: phabstack.GitRepo, wt: phabstack.WorkingTree, branch: str) -> None:
    if repo.branch_exists(branch):
        wt.switch(branch)
        return
    basebranch = phabstack.get_main_config().get('default-branch', 'main')
    if branch == basebranch:
        raise phabstack.InvalidCommitError('No such branch: %s' % branch)
    if not repo.branch_exists(basebranch):
        raise phabstack.InvalidCommitError('Cannot create %s, no such branch: %s' % (branch, basebranch))
    logger.info('Creating branch %s from %s', branch, basebranch)
    wt.switch(branch, startpoint=basebranch)


def stage(client, repo: phabstack.GitRepo, wt: phabstack.WorkingTree, commits: List[phabstack.Commit],
          branch: str) -> List[str]:
    # All remote lookups happen before the target branch is touched
    logger.info('Collecting review information')
    messages = [compose_staged_message(client, x) for x in commits]
    edit = not phabstack.config_is_set('assume-yes')

    staged = list()
    with wt.preserved():
        checkout_target(repo, wt, branch)
        for commit, message in zip(commits, messages):
            try:
                repo.cherry_pick_nocommit(commit)
                sha = repo.commit(message, author=repo.get_author(commit), edit=edit)
            except (phabstack.GitCommandError, KeyboardInterrupt):
                logger.critical('Could not stage %s %s on top of %s', commit.short, commit.subject, branch)
                repo.reset_hard()
                raise
            logger.info('  %s -> %.12s %s', commit.short, sha, commit.subject)
            staged.append(sha)

    logger.info('Staged %s commits on %s', len(staged), branch)
    return staged


def cmd_stage(cmdargs: argparse.Namespace) -> None:
    repo = phabstack.GitRepo()
    repo.require_clean()
    commits = repo.resolve_commits(cmdargs.commits or ['HEAD'])
    branch: Optional[str] = cmdargs.branch
    if not branch:
        branch = phabstack.get_main_config().get('default-branch', 'main')
    client = phabstack.conduit.get_client(repo)
    stage(client, repo, phabstack.WorkingTree(repo), commits, branch)
