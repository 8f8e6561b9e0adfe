# SPDX-License-Identifier: GPL-2.0-or-later
# Copyright (C) 2020 by the Linux Foundation
import subprocess
import logging
import re
import os
import fnmatch
import copy
import enum

import requests

from contextlib import contextmanager
from typing import Optional, Tuple, List, Union

__VERSION__ = '0.3.0'

logger = logging.getLogger('phabstack')

# Anchored at line start, case-sensitive, exactly one revision per line
TRAILER_RE = re.compile(r'^Differential Revision:[ \t]*(https://\S+/)?(D[1-9][0-9]*)[ \t]*$', flags=re.M)
IDENTIFIER_RE = re.compile(r'D[1-9][0-9]*')
TRAILER_NAME = 'Differential Revision'
REVIEWED_BY_NAME = 'Reviewed by'

# git hash-object -t tree /dev/null
EMPTY_TREE = '4b825dc642cb6eb9a060e54bf8d69288fbee4904'

DEFAULT_CONFIG = {
    # Conduit base URI, e.g. https://phabricator.example.org/
    'url': None,
    # Conduit API token (api-...)
    'token': None,
    # Don't ask any questions
    'assume-yes': 'no',
    # Open newly created revisions in the browser
    'browse-on-create': 'no',
    # Confirm the whole commit list once instead of each commit
    'default-to-list-mode': 'no',
    # Show remote-call and git debugging output
    'verbose': 'no',
    # Where "stage" creates new branches from
    'default-branch': 'main',
    # Open the draft revision message in an editor before submitting
    'editor-on-create': 'yes',
}

# This is where we store actual config
MAIN_CONFIG = None

# Used for storing our requests session
REQSESSION = None


class PhabstackError(Exception):
    pass


class UsageError(PhabstackError):
    pass


class InvalidCommitError(PhabstackError):
    pass


class InvalidReviewIdentifierError(PhabstackError):
    pass


class AmbiguousReviewError(PhabstackError):
    def __init__(self, title: str, candidates: List['ReviewRef']):
        self.title = title
        self.candidates = candidates
        super().__init__('Ambiguous reviews for "%s": %s' % (title, ', '.join(x.id for x in candidates)))


class NoReviewFoundError(PhabstackError):
    pass


class RemoteCallError(PhabstackError):
    pass


class DirtyWorkingTreeError(PhabstackError):
    pass


class GitCommandError(PhabstackError):
    pass


class ReviewStatus(enum.Enum):
    OPEN = 'open'
    ACCEPTED = 'accepted'
    NEEDS_REVIEW = 'needs-review'
    REJECTED = 'rejected'
    CLOSED = 'closed'
    ABANDONED = 'abandoned'
    UNKNOWN = 'unknown'

    @classmethod
    def from_conduit(cls, value: Optional[str]) -> 'ReviewStatus':
        mapping = {
            'needs-review': cls.NEEDS_REVIEW,
            'accepted': cls.ACCEPTED,
            'needs-revision': cls.REJECTED,
            'published': cls.CLOSED,
            'abandoned': cls.ABANDONED,
            'draft': cls.OPEN,
            'changes-planned': cls.OPEN,
        }
        return mapping.get(value, cls.UNKNOWN)

    def __str__(self):
        return self.value


class ReviewRef:
    id: str
    phid: Optional[str]
    title: Optional[str]
    status: ReviewStatus
    reviewers: List[Tuple[str, str]]

    def __init__(self, id: str, phid: Optional[str] = None, title: Optional[str] = None,
                 status: ReviewStatus = ReviewStatus.UNKNOWN,
                 reviewers: Optional[List[Tuple[str, str]]] = None):
        self.id = id
        self.phid = phid
        self.title = title
        self.status = status
        if reviewers is None:
            reviewers = list()
        self.reviewers = reviewers

    def __eq__(self, other):
        return isinstance(other, ReviewRef) and self.id == other.id

    def __hash__(self):
        return hash(self.id)

    def __repr__(self):
        out = list()
        out.append('  id: %s' % self.id)
        out.append('  phid: %s' % self.phid)
        out.append('  title: %s' % self.title)
        out.append('  status: %s' % self.status)
        return '\n'.join(out)


class Commit:
    """Read-only snapshot of a commit taken when an operation starts."""
    sha: str
    subject: str
    message: str
    trailer_id: Optional[str]

    def __init__(self, sha: str, message: str):
        self.sha = sha
        self.message = message
        lines = message.strip().splitlines()
        self.subject = lines[0].strip() if lines else ''
        self.trailer_id = find_trailer_id(message)

    @property
    def short(self) -> str:
        return self.sha[:12]

    def __eq__(self, other):
        return isinstance(other, Commit) and self.sha == other.sha

    def __hash__(self):
        return hash(self.sha)

    def __repr__(self):
        return '%s %s' % (self.short, self.subject)


def find_trailer_id(message: str) -> Optional[str]:
    # More than one trailer line, even naming the same revision, is no trailer
    found = [x.group(2) for x in TRAILER_RE.finditer(message)]
    if len(found) == 1:
        return found[0]
    if len(found) > 1:
        logger.debug('Ignoring %s revision trailers: %s', len(found), ', '.join(found))
    return None


def validate_identifier(identifier: str) -> int:
    if not isinstance(identifier, str) or not IDENTIFIER_RE.fullmatch(identifier):
        raise InvalidReviewIdentifierError('Not a valid revision identifier: %s' % identifier)
    return int(identifier[1:])


def _run_command(cmdargs: List[str], stdin: Optional[bytes] = None,
                 rundir: Optional[str] = None) -> Tuple[int, bytes, bytes]:
    logger.debug('Running %s' % ' '.join(cmdargs))
    sp = subprocess.Popen(cmdargs, stdout=subprocess.PIPE, stdin=subprocess.PIPE, stderr=subprocess.PIPE,
                          cwd=rundir)
    (output, error) = sp.communicate(input=stdin)

    return sp.returncode, output, error


def git_run_command(gitdir: Optional[str], args: List[str], stdin: Optional[bytes] = None,
                    logstderr: bool = False, decode: bool = True) -> Tuple[int, Union[str, bytes]]:
    cmdargs = ['git', '--no-pager']
    if gitdir:
        cmdargs += ['-C', gitdir]

    # counteract some potential local settings
    if args[0] == 'log':
        args.insert(1, '--no-abbrev-commit')

    cmdargs += args

    ecode, out, err = _run_command(cmdargs, stdin=stdin)

    if decode:
        out = out.decode(errors='replace')

    if logstderr and len(err.strip()):
        if decode:
            err = err.decode(errors='replace')
        logger.debug('Stderr: %s', err)
        out += err

    return ecode, out


def git_get_command_lines(gitdir: Optional[str], args: list) -> List[str]:
    ecode, out = git_run_command(gitdir, args)
    lines = list()
    if out:
        for line in out.split('\n'):
            if line == '':
                continue
            lines.append(line)

    return lines


def git_get_repo_status(gitdir: Optional[str] = None, untracked: bool = False) -> List[str]:
    args = ['status', '--porcelain=v1']
    if not untracked:
        args.append('--untracked-files=no')
    return git_get_command_lines(gitdir, args)


def git_get_toplevel(path: Optional[str] = None) -> Optional[str]:
    topdir = None
    # Are we in a git tree and if so, what is our toplevel?
    gitargs = ['rev-parse', '--show-toplevel']
    lines = git_get_command_lines(path, gitargs)
    if len(lines) == 1:
        topdir = lines[0]
    return topdir


def git_set_config(fullpath: Optional[str], param: str, value: str, operation: str = '--replace-all'):
    args = ['config', operation, param, value]
    ecode, out = git_run_command(fullpath, args)
    return ecode


def get_config_from_git(regexp: str, defaults: Optional[dict] = None,
                        multivals: Optional[list] = None, source: Optional[str] = None) -> dict:
    if multivals is None:
        multivals = list()
    args = ['config']
    if source:
        args += ['--file', source]
    args += ['-z', '--get-regexp', regexp]
    ecode, out = git_run_command(None, args)
    gitconfig = defaults
    if not gitconfig:
        gitconfig = dict()
    if not out:
        return gitconfig

    for line in out.split('\x00'):
        if not line:
            continue
        try:
            key, value = line.split('\n', 1)
        except ValueError:
            # valueless boolean keys
            key, value = line, 'true'
        chunks = key.split('.')
        cfgkey = chunks[-1].lower()
        if cfgkey in multivals:
            if cfgkey not in gitconfig:
                gitconfig[cfgkey] = list()
            gitconfig[cfgkey].append(value)
        else:
            gitconfig[cfgkey] = value

    return gitconfig


def get_main_config() -> dict:
    global MAIN_CONFIG
    if MAIN_CONFIG is None:
        defcfg = copy.deepcopy(DEFAULT_CONFIG)
        # some options can be provided via the toplevel .phabstack-config file,
        # so load them up and use as defaults
        topdir = git_get_toplevel()
        wtglobs = ['url', 'default-*', '*-on-create']
        if topdir:
            wtcfg = os.path.join(topdir, '.phabstack-config')
            if os.access(wtcfg, os.R_OK):
                logger.debug('Loading worktree configs from %s', wtcfg)
                wtconfig = get_config_from_git(r'phabstack\..*', source=wtcfg)
                for key, val in wtconfig.items():
                    for wtglob in wtglobs:
                        if fnmatch.fnmatch(key, wtglob):
                            logger.debug('wtcfg: %s=%s', key, val)
                            defcfg[key] = val
                            break
        MAIN_CONFIG = get_config_from_git(r'phabstack\..*', defaults=defcfg)

    return MAIN_CONFIG


def config_is_set(key: str) -> bool:
    config = get_main_config()
    val = config.get(key)
    if val is None:
        return False
    if isinstance(val, bool):
        return val
    return str(val).strip().lower() in {'yes', 'true', 'on', '1'}


def get_requests_session():
    global REQSESSION
    if REQSESSION is None:
        REQSESSION = requests.session()
        REQSESSION.headers.update({'User-Agent': 'phabstack/%s' % __VERSION__})
    return REQSESSION


def confirm(question: str) -> bool:
    if config_is_set('assume-yes'):
        logger.debug('Assuming yes: %s', question)
        return True
    try:
        answer = input('%s [y/N] ' % question)
    except EOFError:
        logger.info('')
        return False
    return answer.strip().lower() in {'y', 'yes'}


class GitRepo:
    """Version control client: everything we need to ask of git lives here."""

    def __init__(self, topdir: Optional[str] = None):
        if topdir is None:
            topdir = git_get_toplevel()
            if not topdir:
                raise UsageError('Current directory is not a git checkout')
        self.topdir = topdir

    def run(self, args: List[str], stdin: Optional[bytes] = None) -> str:
        cmdargs = ['git', '--no-pager', '-C', self.topdir] + args
        ecode, out, err = _run_command(cmdargs, stdin=stdin)
        if ecode > 0:
            raise GitCommandError('git %s failed: %s' % (args[0], err.decode(errors='replace').strip()))
        return out.decode(errors='replace')

    def lines(self, args: List[str]) -> List[str]:
        return git_get_command_lines(self.topdir, args)

    def rev_parse(self, rev: str) -> Optional[str]:
        lines = self.lines(['rev-parse', '--verify', '--quiet', '%s^{commit}' % rev])
        if len(lines) != 1:
            return None
        return lines[0]

    def get_commit(self, rev: str) -> Commit:
        sha = self.rev_parse(rev)
        if sha is None:
            raise InvalidCommitError('Not a valid commit: %s' % rev)
        ecode, out = git_run_command(self.topdir, ['show', '-s', '--format=%B', sha])
        if ecode > 0:
            raise InvalidCommitError('Unable to read commit: %s' % rev)
        return Commit(sha, out.rstrip('\n') + '\n')

    def get_parent(self, commit: Commit) -> str:
        parent = self.rev_parse('%s~1' % commit.sha)
        if parent is None:
            logger.debug('%s is a root commit, diffing against the empty tree', commit.short)
            return EMPTY_TREE
        return parent

    def get_author(self, commit: Commit) -> str:
        return self.run(['show', '-s', '--format=%an <%ae>', commit.sha]).strip()

    def get_summary(self, commit: Commit) -> List[str]:
        return self.lines(['show', '--stat', '--format=%h %s%n%n%b', commit.sha])

    def resolve_commits(self, specs: List[str]) -> List[Commit]:
        """Expand commit and range specifiers into an oldest-first commit list.

        A bare commit expands to itself. "A..B" expands to everything reachable
        from B but not from A, oldest first. Empty endpoints mean HEAD.
        """
        commits = list()
        for spec in specs:
            if '..' not in spec:
                commits.append(self.get_commit(spec))
                continue
            lower, upper = spec.split('..', 1)
            if upper.startswith('.') or '..' in upper:
                raise InvalidCommitError('Not a valid commit range: %s' % spec)
            lower = lower or 'HEAD'
            upper = upper or 'HEAD'
            lsha = self.rev_parse(lower)
            usha = self.rev_parse(upper)
            if lsha is None or usha is None:
                raise InvalidCommitError('Not a valid commit range: %s' % spec)
            shas = self.lines(['rev-list', '--reverse', '%s..%s' % (lsha, usha)])
            logger.debug('%s expands to %s commits', spec, len(shas))
            for sha in shas:
                commits.append(self.get_commit(sha))
        return commits

    def is_clean(self) -> bool:
        return not len(git_get_repo_status(self.topdir))

    def require_clean(self) -> None:
        if not self.is_clean():
            raise DirtyWorkingTreeError('Repository contains uncommitted changes, stash or commit them first')

    def current_branch(self) -> Optional[str]:
        ecode, out = git_run_command(self.topdir, ['symbolic-ref', '-q', 'HEAD'])
        if ecode > 0:
            return None
        return re.sub(r'^refs/heads/', '', out.strip())

    def head(self) -> str:
        return self.run(['rev-parse', 'HEAD']).strip()

    def branch_exists(self, branch: str) -> bool:
        ecode, out = git_run_command(self.topdir, ['show-ref', '--verify', '--quiet', 'refs/heads/%s' % branch])
        return ecode == 0

    def checkout(self, rev: str, detach: bool = False) -> None:
        args = ['checkout', '--quiet']
        if detach:
            args.append('--detach')
        args.append(rev)
        self.run(args)

    def create_branch(self, branch: str, startpoint: str) -> None:
        self.run(['checkout', '--quiet', '-b', branch, startpoint])

    def diff(self, base: str, rev: str = 'HEAD') -> str:
        # full context is what the review service wants to render whole files
        return self.run(['diff', '--no-color', '--no-ext-diff', '--binary', '-U99999', base, rev])

    def cherry_pick_nocommit(self, commit: Commit) -> None:
        self.run(['cherry-pick', '--no-commit', commit.sha])

    def reset_hard(self) -> None:
        self.run(['reset', '--hard', '--quiet'])

    def commit(self, message: str, author: Optional[str] = None, edit: bool = False) -> str:
        args = ['commit', '--quiet', '--allow-empty']
        if author:
            args.append('--author=%s' % author)
        if not edit:
            self.run(args + ['-F', '-'], stdin=message.encode())
            return self.head()

        # The editor needs the terminal, so don't capture anything
        args += ['--edit', '-F', self._write_msgfile(message)]
        cmdargs = ['git', '--no-pager', '-C', self.topdir] + args
        logger.debug('Running %s', ' '.join(cmdargs))
        if subprocess.call(cmdargs) > 0:
            raise GitCommandError('git commit failed (empty message?)')
        return self.head()

    def _write_msgfile(self, message: str) -> str:
        gitdir = self.run(['rev-parse', '--absolute-git-dir']).strip()
        msgfile = os.path.join(gitdir, 'PHABSTACK_EDITMSG')
        with open(msgfile, 'w') as fh:
            fh.write(message)
        return msgfile

    def apply(self, diff: str, three_way: bool = False, check_only: bool = False, index: bool = False) -> None:
        args = ['apply']
        if three_way:
            args.append('--3way')
        if check_only:
            args.append('--check')
        if index:
            args.append('--index')
        self.run(args, stdin=diff.encode())

    def get_editor(self) -> str:
        corecfg = get_config_from_git(r'core\.editor', {'editor': os.environ.get('EDITOR', 'vi')})
        return corecfg.get('editor')


class Checkpoint:
    branch: Optional[str]
    sha: str

    def __init__(self, branch: Optional[str], sha: str):
        self.branch = branch
        self.sha = sha

    def __repr__(self):
        if self.branch:
            return self.branch
        return self.sha[:12]


class WorkingTree:
    """Explicit handle on the one checked-out revision of a repository.

    Anything that moves HEAD goes through here, so the transitions of an
    operation can be logged and the original position put back on every
    exit path.
    """

    def __init__(self, repo: GitRepo):
        self.repo = repo
        self.transitions: List[str] = list()

    def save(self) -> Checkpoint:
        branch = self.repo.current_branch()
        sha = self.repo.head()
        cp = Checkpoint(branch, sha)
        logger.debug('Saved checkout position: %s', cp)
        return cp

    def checkout(self, rev: str) -> None:
        self.repo.checkout(rev, detach=True)
        self.transitions.append(rev)

    def switch(self, branch: str, startpoint: Optional[str] = None) -> None:
        if startpoint is None:
            self.repo.checkout(branch)
        else:
            self.repo.create_branch(branch, startpoint)
        self.transitions.append(branch)

    def restore(self, cp: Checkpoint) -> None:
        logger.debug('Restoring checkout position: %s', cp)
        if cp.branch:
            self.repo.checkout(cp.branch)
        else:
            self.repo.checkout(cp.sha, detach=True)
        self.transitions.append(str(cp))

    def _restore_failed(self, cp: Checkpoint, ex: GitCommandError) -> None:
        logger.critical('Unable to return to %s: %s', cp, ex)
        logger.critical('Visited during this run: %s', ', '.join(self.transitions))

    @contextmanager
    def preserved(self):
        cp = self.save()
        try:
            yield cp
        except BaseException:
            # a failed restore must not mask the original error
            try:
                self.restore(cp)
            except GitCommandError as ex:
                self._restore_failed(cp, ex)
            raise
        try:
            self.restore(cp)
        except GitCommandError as ex:
            self._restore_failed(cp, ex)
            raise
