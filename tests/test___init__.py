import pytest  # noqa
import phabstack
import os

from conftest import make_commit


@pytest.mark.parametrize('message,expected', [
    ('Add foo\n\nDifferential Revision: D123\n', 'D123'),
    ('Add foo\n\nDifferential Revision: https://phab.example.org/D45\n', 'D45'),
    ('Add foo\n\nDifferential Revision:D7\n', 'D7'),
    ('Add foo\n\nDifferential Revision: D1\nDifferential Revision: D2\n', None),
    ('Add foo\n\nDifferential Revision: D9\nDifferential Revision: https://phab.example.org/D9\n', None),
    ('Add foo\n\nDifferential Revision:\nD7\n', None),
    ('Add foo\n\ndifferential revision: D123\n', None),
    ('Add foo\n\n  Differential Revision: D123\n', None),
    ('Add foo\n\nDifferential Revision: D0123\n', None),
    ('Add foo\n\nDifferential Revision: http://phab.example.org/D12\n', None),
    ('Add foo\n\nSee Differential Revision: D5 for details\n', None),
    ('Add foo\n', None),
])
def test_find_trailer_id(message, expected):
    assert phabstack.find_trailer_id(message) == expected


@pytest.mark.parametrize('identifier,valid', [
    ('D1', True),
    ('D12345', True),
    ('D0', False),
    ('d12', False),
    ('12', False),
    ('D12a', False),
    ('D12\n', False),
    ('', False),
])
def test_validate_identifier(identifier, valid):
    if valid:
        assert phabstack.validate_identifier(identifier) == int(identifier[1:])
    else:
        with pytest.raises(phabstack.InvalidReviewIdentifierError):
            phabstack.validate_identifier(identifier)


def test_commit_snapshot():
    commit = phabstack.Commit('a' * 40, 'Add foo\n\nSome body\n\nDifferential Revision: D3\n')
    assert commit.subject == 'Add foo'
    assert commit.trailer_id == 'D3'
    assert commit.short == 'a' * 12


@pytest.mark.parametrize('value,expected', [
    ('needs-review', phabstack.ReviewStatus.NEEDS_REVIEW),
    ('accepted', phabstack.ReviewStatus.ACCEPTED),
    ('needs-revision', phabstack.ReviewStatus.REJECTED),
    ('published', phabstack.ReviewStatus.CLOSED),
    ('abandoned', phabstack.ReviewStatus.ABANDONED),
    ('draft', phabstack.ReviewStatus.OPEN),
    ('something-new', phabstack.ReviewStatus.UNKNOWN),
    (None, phabstack.ReviewStatus.UNKNOWN),
])
def test_status_from_conduit(value, expected):
    assert phabstack.ReviewStatus.from_conduit(value) == expected


@pytest.mark.parametrize('value,expected', [
    ('yes', True), ('true', True), ('On', True), ('1', True),
    ('no', False), ('false', False), ('', False), (None, False),
])
def test_config_is_set(value, expected):
    phabstack.MAIN_CONFIG['browse-on-create'] = value
    assert phabstack.config_is_set('browse-on-create') == expected


def test_resolve_single_commit(repo, stack):
    commits = repo.resolve_commits([stack[2]])
    assert [x.sha for x in commits] == [stack[2]]
    assert commits[0].subject == 'Add bar'


def test_resolve_range_oldest_first(repo, stack):
    commits = repo.resolve_commits(['%s..%s' % (stack[0], stack[3])])
    assert [x.sha for x in commits] == stack[1:]


def test_resolve_range_open_upper(repo, stack):
    commits = repo.resolve_commits(['HEAD~2..'])
    assert [x.sha for x in commits] == stack[2:]


def test_resolve_multiple_specs_concatenate(repo, stack):
    commits = repo.resolve_commits([stack[3], '%s..%s' % (stack[0], stack[2])])
    assert [x.sha for x in commits] == [stack[3], stack[1], stack[2]]


def test_resolve_empty_range(repo, stack):
    assert repo.resolve_commits(['HEAD..HEAD']) == list()


@pytest.mark.parametrize('spec', ['nosuchthing', 'HEAD..nosuchthing', 'HEAD...HEAD~1', 'deadbeef'])
def test_resolve_invalid(repo, stack, spec):
    with pytest.raises(phabstack.InvalidCommitError):
        repo.resolve_commits([spec])


def test_root_commit_parent_is_empty_tree(repo, stack):
    root = repo.get_commit(stack[0])
    assert repo.get_parent(root) == phabstack.EMPTY_TREE
    assert repo.get_parent(repo.get_commit(stack[2])) == stack[1]


def test_require_clean(repo, gitdir):
    repo.require_clean()
    with open(os.path.join(gitdir, 'README'), 'a') as fh:
        fh.write('dirty\n')
    with pytest.raises(phabstack.DirtyWorkingTreeError):
        repo.require_clean()


def test_working_tree_restores_branch(repo, stack):
    wt = phabstack.WorkingTree(repo)
    with wt.preserved() as cp:
        assert cp.branch == 'main'
        wt.checkout(stack[1])
        assert repo.current_branch() is None
        assert repo.head() == stack[1]
    assert repo.current_branch() == 'main'
    assert repo.head() == stack[3]
    assert wt.transitions == [stack[1], 'main']


def test_working_tree_restores_detached(repo, stack):
    repo.checkout(stack[2], detach=True)
    wt = phabstack.WorkingTree(repo)
    with wt.preserved() as cp:
        assert cp.branch is None
        wt.checkout(stack[1])
    assert repo.current_branch() is None
    assert repo.head() == stack[2]


def test_working_tree_restores_on_error(repo, stack):
    wt = phabstack.WorkingTree(repo)
    with pytest.raises(phabstack.RemoteCallError):
        with wt.preserved():
            wt.checkout(stack[0])
            raise phabstack.RemoteCallError('boom')
    assert repo.current_branch() == 'main'
    assert repo.head() == stack[3]


def test_working_tree_failed_restore_keeps_original_error(repo, stack, monkeypatch):
    wt = phabstack.WorkingTree(repo)

    def failing_restore(cp):
        raise phabstack.GitCommandError('git checkout failed: locked')

    monkeypatch.setattr(wt, 'restore', failing_restore)
    with pytest.raises(phabstack.RemoteCallError):
        with wt.preserved():
            raise phabstack.RemoteCallError('boom')
    # with nothing else in flight, the restore failure itself is raised
    with pytest.raises(phabstack.GitCommandError):
        with wt.preserved():
            pass


def test_commit_preserves_message(repo, gitdir):
    make_commit(gitdir, 'one.txt', 'one\n', 'One')
    with open(os.path.join(gitdir, 'two.txt'), 'w') as fh:
        fh.write('two\n')
    repo.run(['add', 'two.txt'])
    sha = repo.commit('Two\n\nReviewed by: alice\n', author='Someone Else <else@example.com>')
    commit = repo.get_commit(sha)
    assert commit.message == 'Two\n\nReviewed by: alice\n'
    assert repo.get_author(commit) == 'Someone Else <else@example.com>'
