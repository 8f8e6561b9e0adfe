import pytest  # noqa
import phabstack
import os

from typing import Dict, List, Optional


@pytest.fixture(scope="function", autouse=True)
def settestdefaults(tmp_path, monkeypatch):
    homedir = os.path.join(tmp_path, 'home')
    os.makedirs(homedir, exist_ok=True)
    monkeypatch.setenv('HOME', homedir)
    monkeypatch.setenv('GIT_CONFIG_NOSYSTEM', '1')
    phabstack.MAIN_CONFIG = dict(phabstack.DEFAULT_CONFIG)
    phabstack.MAIN_CONFIG.update({
        'assume-yes': 'yes',
        'editor-on-create': 'no',
    })


def make_commit(repodir: str, fname: str, content: str, message: str, author: Optional[str] = None) -> str:
    with open(os.path.join(repodir, fname), 'w') as fh:
        fh.write(content)
    ecode, out = phabstack.git_run_command(repodir, ['add', fname])
    assert ecode == 0
    args = ['commit', '-q', '-m', message]
    if author:
        args.append('--author=%s' % author)
    ecode, out = phabstack.git_run_command(repodir, args)
    assert ecode == 0
    return phabstack.git_get_command_lines(repodir, ['rev-parse', 'HEAD'])[0]


@pytest.fixture(scope="function")
def gitdir(tmp_path):
    dest = os.path.join(tmp_path, 'repo')
    os.makedirs(dest)
    phabstack.git_run_command(dest, ['init', '-q'])
    phabstack.git_run_command(dest, ['symbolic-ref', 'HEAD', 'refs/heads/main'])
    phabstack.git_set_config(dest, 'user.name', 'Test User')
    phabstack.git_set_config(dest, 'user.email', 'test@example.com')
    phabstack.git_set_config(dest, 'commit.gpgsign', 'false')
    make_commit(dest, 'README', 'Hello\n', 'Initial commit')
    olddir = os.getcwd()
    os.chdir(dest)
    yield dest
    os.chdir(olddir)


@pytest.fixture(scope="function")
def stack(gitdir) -> List[str]:
    """Base commit plus three stacked commits on main, returned oldest first."""
    shas = phabstack.git_get_command_lines(gitdir, ['rev-parse', 'HEAD'])
    shas.append(make_commit(gitdir, 'foo.txt', 'foo\n', 'Add foo\n\nFoo is needed for things.'))
    shas.append(make_commit(gitdir, 'bar.txt', 'bar\n', 'Add bar\n\nBar follows foo.',
                            author='Other Person <other@example.com>'))
    shas.append(make_commit(gitdir, 'baz.txt', 'baz\n', 'Add baz'))
    return shas


class FakeConduit:
    """In-memory stand-in for the review service client."""

    def __init__(self, repo: Optional[phabstack.GitRepo] = None):
        self.url = 'https://phab.example.org'
        self.viewer = 'PHID-USER-me'
        self.authors: Dict[str, str] = dict()
        self.repo = repo
        self.reviews: Dict[str, phabstack.ReviewRef] = dict()
        self.users = {
            'PHID-USER-alice': 'alice',
            'PHID-USER-bob': 'bob',
            'PHID-USER-carol': 'carol',
        }
        self.calls = list()
        self.edits = list()
        self.submissions = list()
        self.fail_titles = set()
        self.fail_edits = False
        self.next_id = 100

    def add_review(self, title: str, status: phabstack.ReviewStatus = phabstack.ReviewStatus.NEEDS_REVIEW,
                   reviewers: Optional[list] = None, author: Optional[str] = None) -> phabstack.ReviewRef:
        revid = 'D%s' % self.next_id
        self.next_id += 1
        review = phabstack.ReviewRef(revid, phid='PHID-DREV-%s' % revid, title=title, status=status,
                                     reviewers=reviewers)
        self.reviews[revid] = review
        self.authors[revid] = author or self.viewer
        return review

    def revision_url(self, identifier: str) -> str:
        return '%s/%s' % (self.url, identifier)

    def lookup_phid(self, identifier: str) -> str:
        self.calls.append(('lookup_phid', identifier))
        if identifier not in self.reviews:
            raise phabstack.NoReviewFoundError('No such revision: %s' % identifier)
        return self.reviews[identifier].phid

    def search_reviews(self, constraints: dict) -> List[phabstack.ReviewRef]:
        self.calls.append(('search_reviews', constraints))
        found = list(self.reviews.values())
        if 'ids' in constraints:
            found = [x for x in found if int(x.id[1:]) in constraints['ids']]
        if 'statuses' in constraints:
            closed = {phabstack.ReviewStatus.CLOSED, phabstack.ReviewStatus.ABANDONED}
            found = [x for x in found if x.status not in closed]
        if 'authorPHIDs' in constraints:
            found = [x for x in found if self.authors[x.id] in constraints['authorPHIDs']]
        return found

    def open_reviews(self) -> List[phabstack.ReviewRef]:
        return self.search_reviews({'statuses': ['open()'], 'authorPHIDs': [self.viewer]})

    def edit_revision(self, phid: Optional[str], transactions: List[dict]) -> dict:
        self.calls.append(('edit_revision', phid))
        if self.fail_edits:
            raise phabstack.RemoteCallError('differential.revision.edit: boom')
        self.edits.append((phid, transactions))
        for review in self.reviews.values():
            if review.phid == phid:
                return {'object': {'id': int(review.id[1:]), 'phid': phid}}
        raise phabstack.RemoteCallError('No such object: %s' % phid)

    def submit_diff(self, mode: str, base: str, message: str, target_id: Optional[str] = None) -> str:
        self.calls.append(('submit_diff', mode))
        title = message.strip().splitlines()[0]
        if title in self.fail_titles:
            raise phabstack.RemoteCallError('differential.createrawdiff: boom')
        head = self.repo.head() if self.repo else None
        self.submissions.append((mode, base, head, message, target_id))
        if mode == 'update':
            if target_id not in self.reviews:
                raise phabstack.RemoteCallError('No such revision: %s' % target_id)
            return target_id
        return self.add_review(title).id

    def resolve_usernames(self, phids: List[str]) -> List[str]:
        self.calls.append(('resolve_usernames', tuple(phids)))
        return [self.users[x] for x in phids if x in self.users]

    def apply_patch(self, identifier: str, options: Optional[dict] = None) -> None:
        self.calls.append(('apply_patch', identifier))

    def parent_links(self) -> List[tuple]:
        byphid = {x.phid: x.id for x in self.reviews.values()}
        links = list()
        for phid, transactions in self.edits:
            for xact in transactions:
                if xact['type'] == 'parents.add':
                    for parent in xact['value']:
                        links.append((byphid[phid], byphid[parent]))
        return links


@pytest.fixture(scope="function")
def fakeconduit():
    return FakeConduit()


@pytest.fixture(scope="function")
def repo(gitdir):
    return phabstack.GitRepo(gitdir)
