#!/usr/bin/env python3
# -*- coding: utf-8 -*-
# SPDX-License-Identifier: GPL-2.0-or-later
# Copyright (C) 2020 by the Linux Foundation
#
import argparse

import phabstack
import phabstack.conduit

from typing import Optional, List, Set, Tuple

logger = phabstack.logger

ROW_REVIEW = 'review'
ROW_NONE = 'none'
ROW_AMBIGUOUS = 'ambiguous'


def find_by_title(client, title: str) -> List[phabstack.ReviewRef]:
    """Fallback lookup: our open reviews whose title is exactly the commit summary."""
    if not title:
        return list()
    candidates = list()
    for review in client.open_reviews():
        if review.title is not None and review.title.strip() == title:
            candidates.append(review)
    logger.debug('Title search for "%s" found %s candidates', title, len(candidates))
    return candidates


def resolve(client, commit: phabstack.Commit) -> Optional[phabstack.ReviewRef]:
    if commit.trailer_id:
        logger.debug('%s carries trailer for %s', commit.short, commit.trailer_id)
        return phabstack.ReviewRef(commit.trailer_id)

    candidates = find_by_title(client, commit.subject)
    if not candidates:
        return None
    if len(candidates) > 1:
        raise phabstack.AmbiguousReviewError(commit.subject, candidates)
    return candidates[0]


def translate(client, identifier: str) -> str:
    phabstack.validate_identifier(identifier)
    return client.lookup_phid(identifier)


def get_review(client, identifier: str) -> phabstack.ReviewRef:
    revid = phabstack.validate_identifier(identifier)
    found = client.search_reviews({'ids': [revid]})
    if not found:
        raise phabstack.NoReviewFoundError('No such revision: %s' % identifier)
    return found[0]


def status(client, identifier: str) -> Tuple[phabstack.ReviewStatus, str]:
    review = get_review(client, identifier)
    return review.status, review.title


def accepted_reviewers(client, identifier: str) -> Set[str]:
    review = get_review(client, identifier)
    phids = [phid for phid, rstatus in review.reviewers if rstatus == 'accepted']
    if not phids:
        return set()
    return set(client.resolve_usernames(phids))


class StatusRow:
    commit: phabstack.Commit
    kind: str
    review: Optional[phabstack.ReviewRef]
    candidates: List[phabstack.ReviewRef]

    def __init__(self, commit: phabstack.Commit, kind: str, review: Optional[phabstack.ReviewRef] = None,
                 candidates: Optional[List[phabstack.ReviewRef]] = None):
        self.commit = commit
        self.kind = kind
        self.review = review
        if candidates is None:
            candidates = list()
        self.candidates = candidates

    def as_string(self) -> str:
        if self.kind == ROW_REVIEW:
            state = '%s %s: %s' % (self.review.id, self.review.status, self.review.title)
        elif self.kind == ROW_AMBIGUOUS:
            state = 'Ambiguous Reviews: %s' % ', '.join(x.id for x in self.candidates)
        else:
            state = 'No Review'
        return '%s %s\n    %s' % (self.commit.short, self.commit.subject, state)

    def __repr__(self):
        return self.as_string()


def report(client, commits: List[phabstack.Commit]) -> List[StatusRow]:
    # Unlike resolve(), ambiguity is something to show here, not a failure
    rows = list()
    for commit in commits:
        if commit.trailer_id:
            try:
                review = get_review(client, commit.trailer_id)
                rows.append(StatusRow(commit, ROW_REVIEW, review=review))
            except phabstack.NoReviewFoundError:
                logger.debug('%s points at missing revision %s', commit.short, commit.trailer_id)
                rows.append(StatusRow(commit, ROW_NONE))
            continue

        candidates = find_by_title(client, commit.subject)
        if len(candidates) == 1:
            rows.append(StatusRow(commit, ROW_REVIEW, review=candidates[0]))
        elif candidates:
            rows.append(StatusRow(commit, ROW_AMBIGUOUS, candidates=candidates))
        else:
            rows.append(StatusRow(commit, ROW_NONE))
    return rows


def cmd_list(cmdargs: argparse.Namespace) -> None:
    repo = phabstack.GitRepo()
    commits = repo.resolve_commits(cmdargs.commits or ['HEAD'])
    client = phabstack.conduit.get_client(repo)
    for row in report(client, commits):
        print(row.as_string())
