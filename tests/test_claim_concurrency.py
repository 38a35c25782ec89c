"""
Tests that concurrent claimers never receive the same job
"""

import threading

from sqlalchemy import select

from jobcore.db.models import Job
from jobcore.errors import InvalidTransition

from conftest import USER_ID


def test_concurrent_claims_are_disjoint(db, queue, ops, token):
    job_ids = {queue.enqueue(USER_ID, 'novel_split', {'n': i}) for i in range(20)}
    claimed_by_thread = [[] for _ in range(4)]
    errors = []
    start = threading.Barrier(4)

    def claim(slot):
        try:
            start.wait()
            for _ in range(3):
                claimed_by_thread[slot].extend(job.id for job in ops.claim_pending_jobs(2, token))
        except Exception as e:
            errors.append(e)

    threads = [threading.Thread(target=claim, args=(i,)) for i in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert errors == []

    # Drain whatever is left from the main thread
    leftover = []
    while True:
        batch = ops.claim_pending_jobs(5, token)
        if not batch:
            break
        leftover.extend(job.id for job in batch)

    all_claims = [job_id for claims in claimed_by_thread for job_id in claims] + leftover
    assert len(all_claims) == len(set(all_claims))
    assert set(all_claims) == job_ids

    with db.session() as session:
        statuses = set(session.execute(select(Job.status)).scalars())
    assert statuses == {'processing'}


def test_start_job_race_has_one_winner(db, queue, ops, token):
    job_id = queue.enqueue(USER_ID, 'novel_split', {})
    results = []
    start = threading.Barrier(4)

    def start_job():
        start.wait()
        try:
            results.append(ops.start_job(job_id, token))
        except Exception as e:
            results.append(e)

    threads = [threading.Thread(target=start_job) for _ in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert results.count(True) == 1
    assert len(results) == 4
    assert all(result is True or isinstance(result, InvalidTransition) for result in results)
