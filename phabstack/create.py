#!/usr/bin/env python3
# -*- coding: utf-8 -*-
# SPDX-License-Identifier: GPL-2.0-or-later
# Copyright (C) 2020 by the Linux Foundation
#
import argparse
import enum
import os
import shlex
import subprocess
import sys
import tempfile
import webbrowser

import phabstack
import phabstack.conduit
import phabstack.review

from typing import Optional, List

logger = phabstack.logger


class StepOutcome(enum.Enum):
    SUCCEEDED = 'succeeded'
    SKIPPED = 'skipped'
    FAILED = 'failed'


class StepResult:
    """What happened to one commit of a create batch.

    A FAILED step never hands a review on to the next commit. A SKIPPED one
    does when the commit already had a review of its own.
    """
    commit: phabstack.Commit
    outcome: StepOutcome
    review: Optional[phabstack.ReviewRef]
    error: Optional[Exception]

    def __init__(self, commit: phabstack.Commit, outcome: StepOutcome,
                 review: Optional[phabstack.ReviewRef] = None, error: Optional[Exception] = None):
        self.commit = commit
        self.outcome = outcome
        self.review = review
        self.error = error

    @property
    def parent_for_next(self) -> Optional[phabstack.ReviewRef]:
        if self.outcome == StepOutcome.FAILED:
            return None
        return self.review

    def __repr__(self):
        return '%s: %s %s' % (self.commit.short, self.outcome.value, self.review.id if self.review else '-')


def compose_draft(commit: phabstack.Commit, reviewers: List[str], subscribers: List[str]) -> str:
    draft = commit.message.rstrip('\n') + '\n'
    draft += '\nTest Plan:\n'
    draft += '\nReviewers: %s\n' % ', '.join(reviewers)
    draft += '\nSubscribers: %s\n' % ', '.join(subscribers)
    return draft


def edit_draft(repo: phabstack.GitRepo, draft: str) -> str:
    editor = repo.get_editor()
    logger.debug('editor=%s', editor)
    with tempfile.TemporaryDirectory(prefix='phabstack-') as temp_dir:
        temp_fpath = os.path.join(temp_dir, 'REVISION_EDITMSG')
        with open(temp_fpath, 'xb') as temp_draft:
            temp_draft.write(draft.encode())
            temp_draft.write(b'\n# Lines starting with "#" are ignored. An empty message skips this commit.\n')

        sp = shlex.shlex(editor, posix=True)
        sp.whitespace_split = True
        cmdargs = list(sp) + [temp_fpath]
        logger.debug('Running %s' % ' '.join(cmdargs))
        sp = subprocess.Popen(cmdargs)
        sp.wait()

        with open(temp_fpath, 'rb') as temp_draft:
            edited = temp_draft.read().decode(errors='replace')

    lines = [x for x in edited.splitlines() if not x.startswith('#')]
    return '\n'.join(lines).strip()


def wants_editor() -> bool:
    return phabstack.config_is_set('editor-on-create') and not phabstack.config_is_set('assume-yes')


def show_commit(repo: phabstack.GitRepo, commit: phabstack.Commit) -> None:
    logger.info('---')
    for line in repo.get_summary(commit):
        logger.info('  %s', line)


def link_reviews(client, parent: phabstack.ReviewRef, child: phabstack.ReviewRef) -> None:
    child_phid = phabstack.review.translate(client, child.id)
    parent_phid = phabstack.review.translate(client, parent.id)
    logger.debug('Linking %s as parent of %s', parent.id, child.id)
    client.edit_revision(child_phid, [{'type': 'parents.add', 'value': [parent_phid]}])


def create_one(client, repo: phabstack.GitRepo, wt: phabstack.WorkingTree, commit: phabstack.Commit,
               parent: Optional[phabstack.ReviewRef], reviewers: List[str], subscribers: List[str],
               confirm_each: bool = True) -> StepResult:
    try:
        existing = phabstack.review.resolve(client, commit)
    except phabstack.PhabstackError as ex:
        logger.critical('Could not look up the review for %s: %s', commit.short, ex)
        return StepResult(commit, StepOutcome.FAILED, error=ex)
    if existing is not None:
        logger.info('%s already has %s, use "phabstack update" to change it', commit.short, existing.id)
        return StepResult(commit, StepOutcome.SKIPPED, review=existing)

    if confirm_each:
        show_commit(repo, commit)
        if not phabstack.confirm('Create a review for %s?' % commit.short):
            logger.info('Skipping %s', commit.short)
            return StepResult(commit, StepOutcome.SKIPPED)

    draft = compose_draft(commit, reviewers, subscribers)
    if wants_editor():
        draft = edit_draft(repo, draft)
        if not draft:
            logger.info('Empty message, skipping %s', commit.short)
            return StepResult(commit, StepOutcome.SKIPPED)

    try:
        wt.checkout(commit.sha)
        revid = client.submit_diff('create', repo.get_parent(commit), draft)
    except phabstack.PhabstackError as ex:
        logger.critical('Could not create a review for %s: %s', commit.short, ex)
        return StepResult(commit, StepOutcome.FAILED, error=ex)

    review = phabstack.ReviewRef(revid, title=commit.subject)
    url = client.revision_url(revid)
    logger.info('Created %s for %s: %s', revid, commit.short, url)

    if parent is not None:
        try:
            link_reviews(client, parent, review)
            logger.info('  depends on %s', parent.id)
        except phabstack.PhabstackError as ex:
            logger.critical('Could not make %s depend on %s: %s', revid, parent.id, ex)
            logger.critical('The stack is broken at %s', revid)
            return StepResult(commit, StepOutcome.FAILED, review=review, error=ex)

    if phabstack.config_is_set('browse-on-create'):
        webbrowser.open(url)

    return StepResult(commit, StepOutcome.SUCCEEDED, review=review)


def create_chain(client, repo: phabstack.GitRepo, wt: phabstack.WorkingTree, commits: List[phabstack.Commit],
                 reviewers: Optional[List[str]] = None, subscribers: Optional[List[str]] = None,
                 listmode: bool = False) -> List[StepResult]:
    if reviewers is None:
        reviewers = list()
    if subscribers is None:
        subscribers = list()
    results = list()
    if not commits:
        logger.info('No commits to process.')
        return results

    if listmode:
        logger.info('Will create reviews for:')
        for commit in commits:
            logger.info('  %s %s', commit.short, commit.subject)
        if not phabstack.confirm('Proceed with %s commits?' % len(commits)):
            logger.info('Aborting at your request.')
            return [StepResult(x, StepOutcome.SKIPPED) for x in commits]

    parent = None
    with wt.preserved():
        try:
            for commit in commits:
                result = create_one(client, repo, wt, commit, parent, reviewers, subscribers,
                                    confirm_each=not listmode)
                results.append(result)
                parent = result.parent_for_next
        except (KeyboardInterrupt, phabstack.PhabstackError):
            created = [x.review.id for x in results if x.review is not None and x.outcome != StepOutcome.SKIPPED]
            if created:
                logger.critical('Interrupted after creating: %s', ', '.join(created))
                logger.critical('Abandon them on the review service if you do not need them.')
            raise

    return results


def update(client, repo: phabstack.GitRepo, wt: phabstack.WorkingTree, commit: phabstack.Commit) -> Optional[str]:
    review = phabstack.review.resolve(client, commit)
    if review is None:
        raise phabstack.NoReviewFoundError('No review found for %s %s' % (commit.short, commit.subject))

    show_commit(repo, commit)
    if not phabstack.confirm('Update %s with %s?' % (review.id, commit.short)):
        logger.info('Not updating %s', review.id)
        return None

    with wt.preserved():
        wt.checkout(commit.sha)
        revid = client.submit_diff('update', repo.get_parent(commit), commit.message, target_id=review.id)

    logger.info('Updated %s: %s', revid, client.revision_url(revid))
    return revid


def split_names(values: Optional[List[str]]) -> List[str]:
    names = list()
    for value in values or list():
        for name in value.split(','):
            name = name.strip()
            if name and name not in names:
                names.append(name)
    return names


def cmd_create(cmdargs: argparse.Namespace) -> None:
    repo = phabstack.GitRepo()
    repo.require_clean()
    commits = repo.resolve_commits(cmdargs.commits or ['HEAD'])
    client = phabstack.conduit.get_client(repo)
    listmode = cmdargs.listmode or phabstack.config_is_set('default-to-list-mode')
    results = create_chain(client, repo, phabstack.WorkingTree(repo), commits,
                           reviewers=split_names(cmdargs.reviewers),
                           subscribers=split_names(cmdargs.subscribers),
                           listmode=listmode)
    logger.info('---')
    for result in results:
        logger.info('  %s', result)
    if any(x.outcome == StepOutcome.FAILED for x in results):
        sys.exit(1)


def cmd_update(cmdargs: argparse.Namespace) -> None:
    repo = phabstack.GitRepo()
    repo.require_clean()
    commits = repo.resolve_commits([cmdargs.commit or 'HEAD'])
    if len(commits) != 1:
        raise phabstack.UsageError('update works on exactly one commit, got %s' % len(commits))
    client = phabstack.conduit.get_client(repo)
    update(client, repo, phabstack.WorkingTree(repo), commits[0])
