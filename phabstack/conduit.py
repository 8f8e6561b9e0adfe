#!/usr/bin/env python3
# -*- coding: utf-8 -*-
# SPDX-License-Identifier: GPL-2.0-or-later
# Copyright (C) 2020 by the Linux Foundation
#
import os
import re
import json
import pathlib

import requests

import phabstack

from typing import Optional, List, Dict, Tuple

logger = phabstack.logger

# Fields we recognize in a revision message, same as arcanist does
MESSAGE_FIELDS = {
    'summary': 'summary',
    'test plan': 'testPlan',
    'reviewers': 'reviewers',
    'reviewer': 'reviewers',
    'subscribers': 'subscribers',
    'cc': 'subscribers',
    'differential revision': None,
}
FIELD_RE = re.compile(r'^([A-Za-z][A-Za-z ]*):\s*(.*)$')

# Conduit search calls will not return more than this per page
SEARCH_LIMIT = 100


def parse_revision_message(message: str) -> Dict[str, object]:
    """Split a revision message into the fields the review service knows about.

    The first line is the title, free text up to the first known field
    header is the summary, and Reviewers/Subscribers are comma- or
    space-separated username lists.
    """
    fields = {
        'title': '',
        'summary': list(),
        'testPlan': list(),
        'reviewers': list(),
        'subscribers': list(),
    }
    lines = message.strip().splitlines()
    if not lines:
        return {'title': '', 'summary': '', 'testPlan': '', 'reviewers': list(), 'subscribers': list()}
    fields['title'] = lines[0].strip()
    current = 'summary'
    for line in lines[1:]:
        if line.startswith('#'):
            # editor comments
            continue
        matches = FIELD_RE.match(line)
        if matches and matches.group(1).strip().lower() in MESSAGE_FIELDS:
            current = MESSAGE_FIELDS[matches.group(1).strip().lower()]
            line = matches.group(2)
            if current is None:
                continue
        elif current is None:
            current = 'summary'
        fields[current].append(line)

    parsed = {'title': fields['title']}
    for key in ('summary', 'testPlan'):
        parsed[key] = '\n'.join(fields[key]).strip()
    for key in ('reviewers', 'subscribers'):
        names = list()
        for chunk in re.split(r'[,\s]+', ' '.join(fields[key])):
            if chunk and chunk not in names:
                names.append(chunk)
        parsed[key] = names
    return parsed


def get_arc_credentials(topdir: Optional[str] = None) -> Tuple[Optional[str], Optional[str]]:
    """Look up url and token the way arcanist users already have them set up."""
    url = token = None
    if topdir:
        arcconfig = os.path.join(topdir, '.arcconfig')
        if os.access(arcconfig, os.R_OK):
            try:
                with open(arcconfig, 'r') as fh:
                    url = json.load(fh).get('phabricator.uri')
                logger.debug('Found phabricator.uri=%s in %s', url, arcconfig)
            except ValueError as ex:
                logger.debug('Could not parse %s: %s', arcconfig, ex)

    arcrc = os.path.join(str(pathlib.Path.home()), '.arcrc')
    if os.access(arcrc, os.R_OK):
        try:
            with open(arcrc, 'r') as fh:
                hosts = json.load(fh).get('hosts', dict())
        except ValueError as ex:
            logger.debug('Could not parse %s: %s', arcrc, ex)
            hosts = dict()
        for host, hdata in hosts.items():
            hosturl = re.sub(r'api/?$', '', host).rstrip('/')
            if url is None:
                url = hosturl
            if url.rstrip('/') == hosturl:
                token = hdata.get('token')
                break

    return url, token


class ConduitClient:
    """Review service client speaking Conduit to a Phabricator install."""

    def __init__(self, url: str, token: str, repo: Optional[phabstack.GitRepo] = None):
        self.url = url.rstrip('/')
        self.token = token
        self.repo = repo
        self.session = phabstack.get_requests_session()
        self.viewer_phid = None
        self._open_reviews = None

    def call(self, method: str, params: Optional[dict] = None) -> object:
        if params is None:
            params = dict()
        logger.debug('conduit: %s %s', method, json.dumps(params))
        params = dict(params)
        params['__conduit__'] = {'token': self.token}
        data = {
            'params': json.dumps(params),
            'output': 'json',
            '__conduit__': '1',
        }
        apiurl = '%s/api/%s' % (self.url, method)
        try:
            rsp = self.session.post(apiurl, data=data)
            rsp.raise_for_status()
            rdata = rsp.json()
        except requests.exceptions.RequestException as ex:
            raise phabstack.RemoteCallError('%s: %s' % (method, ex)) from ex
        except ValueError as ex:
            raise phabstack.RemoteCallError('%s: unexpected response from %s' % (method, apiurl)) from ex

        if rdata.get('error_code'):
            logger.debug('conduit error: %s', rdata)
            raise phabstack.RemoteCallError('%s: %s' % (method, rdata.get('error_info') or rdata.get('error_code')))
        return rdata.get('result')

    def _search(self, method: str, params: dict) -> List[dict]:
        results = list()
        params = dict(params)
        params['limit'] = SEARCH_LIMIT
        while True:
            result = self.call(method, params)
            results += result.get('data', list())
            after = (result.get('cursor') or dict()).get('after')
            if not after:
                break
            params['after'] = after
        return results

    def whoami(self) -> str:
        if self.viewer_phid is None:
            self.viewer_phid = self.call('user.whoami')['phid']
            logger.debug('Acting as %s', self.viewer_phid)
        return self.viewer_phid

    def open_reviews(self) -> List[phabstack.ReviewRef]:
        """Open reviews authored by us, fetched once until we change one."""
        if self._open_reviews is None:
            self._open_reviews = self.search_reviews({
                'statuses': ['open()'],
                'authorPHIDs': [self.whoami()],
            })
        return self._open_reviews

    def revision_url(self, identifier: str) -> str:
        return '%s/%s' % (self.url, identifier)

    def lookup_phid(self, identifier: str) -> str:
        result = self.call('phid.lookup', {'names': [identifier]})
        if not result or identifier not in result:
            raise phabstack.NoReviewFoundError('No such revision: %s' % identifier)
        return result[identifier]['phid']

    def search_reviews(self, constraints: dict) -> List[phabstack.ReviewRef]:
        params = {
            'constraints': constraints,
            'attachments': {'reviewers': True},
        }
        reviews = list()
        for entry in self._search('differential.revision.search', params):
            fields = entry.get('fields', dict())
            reviewers = list()
            for rdata in entry.get('attachments', dict()).get('reviewers', dict()).get('reviewers', list()):
                reviewers.append((rdata.get('reviewerPHID'), rdata.get('status')))
            status = phabstack.ReviewStatus.from_conduit(fields.get('status', dict()).get('value'))
            reviews.append(phabstack.ReviewRef('D%s' % entry['id'], phid=entry.get('phid'),
                                               title=fields.get('title'), status=status, reviewers=reviewers))
        return reviews

    def edit_revision(self, phid: Optional[str], transactions: List[dict]) -> dict:
        params = {'transactions': transactions}
        if phid:
            params['objectIdentifier'] = phid
        # titles and statuses may have changed under the cached list
        self._open_reviews = None
        return self.call('differential.revision.edit', params)

    def resolve_usernames(self, phids: List[str]) -> List[str]:
        if not phids:
            return list()
        users = self._search('user.search', {'constraints': {'phids': list(phids)}})
        byphid = {x['phid']: x['fields']['username'] for x in users}
        # keep the order we were asked in
        return [byphid[x] for x in phids if x in byphid]

    def resolve_user_phids(self, usernames: List[str]) -> List[str]:
        if not usernames:
            return list()
        users = self._search('user.search', {'constraints': {'usernames': list(usernames)}})
        byname = {x['fields']['username']: x['phid'] for x in users}
        missing = [x for x in usernames if x not in byname]
        if missing:
            raise phabstack.RemoteCallError('Unknown users: %s' % ', '.join(missing))
        return [byname[x] for x in usernames]

    def submit_diff(self, mode: str, base: str, message: str, target_id: Optional[str] = None) -> str:
        if mode not in {'create', 'update'}:
            raise phabstack.UsageError('Unknown submit mode: %s' % mode)
        if mode == 'update':
            phabstack.validate_identifier(target_id)
        if self.repo is None:
            raise phabstack.UsageError('Submitting a diff requires a git repository')

        diff = self.repo.diff(base)
        if not diff.strip():
            raise phabstack.RemoteCallError('Nothing to submit: no changes between %s and HEAD' % base[:12])
        result = self.call('differential.createrawdiff', {'diff': diff})
        diff_phid = result['phid']
        logger.debug('Uploaded diff %s', diff_phid)

        fields = parse_revision_message(message)
        transactions = [{'type': 'update', 'value': diff_phid}]
        if fields['title']:
            transactions.append({'type': 'title', 'value': fields['title']})
        transactions.append({'type': 'summary', 'value': fields['summary']})
        if mode == 'create' or fields['testPlan']:
            transactions.append({'type': 'testPlan', 'value': fields['testPlan']})
        if fields['reviewers']:
            transactions.append({'type': 'reviewers.add',
                                 'value': self.resolve_user_phids(fields['reviewers'])})
        if fields['subscribers']:
            transactions.append({'type': 'subscribers.add',
                                 'value': self.resolve_user_phids(fields['subscribers'])})

        target = None
        if mode == 'update':
            target = self.lookup_phid(target_id)
        result = self.edit_revision(target, transactions)
        return 'D%s' % result['object']['id']

    def apply_patch(self, identifier: str, options: Optional[dict] = None) -> None:
        if options is None:
            options = dict()
        revid = phabstack.validate_identifier(identifier)
        if self.repo is None:
            raise phabstack.UsageError('Applying a patch requires a git repository')
        phid = self.lookup_phid(identifier)
        diffs = self.call('differential.diff.search', {
            'constraints': {'revisionPHIDs': [phid]},
            'order': 'newest',
            'limit': 1,
        }).get('data', list())
        if not diffs:
            raise phabstack.NoReviewFoundError('Revision D%s has no diffs' % revid)
        rawdiff = self.call('differential.getrawdiff', {'diffID': diffs[0]['id']})
        logger.debug('Applying diff %s of %s', diffs[0]['id'], identifier)
        try:
            self.repo.apply(rawdiff, three_way=options.get('three_way', False),
                            check_only=options.get('check_only', False), index=options.get('index', False))
        except phabstack.GitCommandError as ex:
            raise phabstack.RemoteCallError('Could not apply %s: %s' % (identifier, ex)) from ex


def get_client(repo: Optional[phabstack.GitRepo] = None) -> ConduitClient:
    config = phabstack.get_main_config()
    url = config.get('url')
    token = config.get('token')
    if not (url and token):
        topdir = repo.topdir if repo else phabstack.git_get_toplevel()
        arcurl, arctoken = get_arc_credentials(topdir)
        url = url or arcurl
        token = token or arctoken
    if not url:
        raise phabstack.UsageError('No review service configured, set phabstack.url')
    if not token:
        raise phabstack.UsageError('No API token for %s, set phabstack.token' % url)
    return ConduitClient(url, token, repo=repo)
