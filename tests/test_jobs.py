import threading

import pytest

from tubegrab.jobs import Job, JobStatus, JobStore, generate_job_id


def make_job(job_id='job1', **kwargs):
    return Job(id=job_id, url='https://example.com/watch?v=1', format='mp3', quality='192', **kwargs)


def test_create_sets_queued_and_get_returns_copy(store):
    store.create(make_job(status=JobStatus.PROCESSING))
    job = store.get('job1')
    assert job.status == JobStatus.QUEUED
    assert job.progress == 0

    job.progress = 99
    assert store.get('job1').progress == 0


def test_create_rejects_duplicate_id(store):
    store.create(make_job())
    with pytest.raises(KeyError):
        store.create(make_job())


def test_update_unknown_id_is_noop(store):
    assert store.update('missing', progress=50, message='x', status=JobStatus.PROCESSING) is False
    assert store.get('missing') is None


def test_progress_never_decreases_while_running(store):
    store.create(make_job())
    store.update('job1', progress=40, status=JobStatus.PROCESSING)
    store.update('job1', progress=20, message='Downloading...')
    job = store.get('job1')
    assert job.progress == 40
    assert job.message == 'Downloading...'


def test_progress_is_clamped(store):
    store.create(make_job())
    store.update('job1', progress=250)
    assert store.get('job1').progress == 100


def test_terminal_status_is_final(store):
    store.create(make_job())
    assert store.complete('job1', '/tmp/x.mp3', 'x.mp3', 10, 'Ready!')
    assert store.update('job1', progress=5, status=JobStatus.PROCESSING) is False
    assert store.fail('job1', 'Failed') is False

    job = store.get('job1')
    assert job.status == JobStatus.COMPLETED
    assert job.progress == 100
    assert job.file_path == '/tmp/x.mp3'
    assert job.filename == 'x.mp3'
    assert job.file_size == 10


def test_fail_resets_progress(store):
    store.create(make_job())
    store.update('job1', progress=60, status=JobStatus.PROCESSING)
    assert store.fail('job1', 'Failed: boom')
    job = store.get('job1')
    assert job.status == JobStatus.ERROR
    assert job.progress == 0
    assert job.message == 'Failed: boom'


def test_delete_is_idempotent(store):
    store.create(make_job())
    assert store.delete('job1') is True
    assert store.delete('job1') is False
    assert 'job1' not in store
    assert len(store) == 0


def test_snapshot_tolerates_mutation_during_iteration(store):
    for i in range(5):
        store.create(make_job(f'job{i}'))
    for job in store.snapshot():
        store.delete(job.id)
    assert len(store) == 0


def test_count_by_status(store):
    store.create(make_job('a'))
    store.create(make_job('b'))
    store.update('b', status=JobStatus.PROCESSING)
    assert store.count_by_status(JobStatus.QUEUED) == 1
    assert store.count_by_status(JobStatus.PROCESSING) == 1


def test_public_dict_hides_internal_fields(store):
    store.create(make_job())
    store.complete('job1', '/secret/path/job1.mp3', 'Song.mp3', 2048, 'Ready!')
    public = store.get('job1').to_public_dict()
    assert public['status'] == 'completed'
    assert public['filename'] == 'Song.mp3'
    assert public['fileSize'] == 2048
    assert 'createdAt' in public
    assert 'filePath' not in public and 'file_path' not in public
    assert 'url' not in public


def test_concurrent_updates_from_threads(store):
    store.create(make_job())
    store.update('job1', status=JobStatus.PROCESSING)

    def bump(start):
        for p in range(start, 100, 4):
            store.update('job1', progress=p)

    threads = [threading.Thread(target=bump, args=(i,)) for i in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert store.get('job1').progress == 99


def test_generated_ids_are_unique():
    ids = {generate_job_id() for _ in range(1000)}
    assert len(ids) == 1000
