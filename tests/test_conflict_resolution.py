import pytest

from healthtracker.concurrency import UpdateConflict, UpdateSuccess
from healthtracker.errors import VersionConflictError
from healthtracker.events import EventType
from healthtracker.resolution import (
    ConflictResolver,
    Resolution,
    ask_user,
    prefer_local,
    prefer_server,
)


async def _visit(store, **fields):
    base = {'doctor_name': 'Dr. Ada', 'visit_date': '2024-05-01', 'notes': 'a', 'diagnosis': 'flu'}
    base.update(fields)
    return await store.create('owner-1', base)


def _bump(store, visit_id, **fields):
    async def _write():
        current = await store.read(visit_id)
        await store.conditional_update(visit_id, current.version, {**fields, 'version': current.version + 1})

    return _write


@pytest.mark.asyncio
async def test_online_race_resolved_with_local_changes(store, engine, resolver):
    visit = await _visit(store)

    first = await engine.attempt_update(visit.id, {'notes': 'a-A'}, 1)
    assert isinstance(first, UpdateSuccess)
    assert first.version == 2

    second = await engine.attempt_update(visit.id, {'notes': 'a-B'}, 1)
    assert isinstance(second, UpdateConflict)
    assert second.server.version == 2
    assert second.server.fields['notes'] == 'a-A'

    outcome = await resolver.resolve(second, Resolution.USE_LOCAL)

    assert outcome.settled
    assert outcome.record.version == 3
    assert outcome.record.fields['notes'] == 'a-B'
    stored = await store.read(visit.id)
    assert stored.version == 3
    assert stored.fields['notes'] == 'a-B'


@pytest.mark.asyncio
async def test_use_server_discards_local_patch_without_writing(store, interleaving_store, interleaved_engine, interleaved_resolver):
    visit = await _visit(store)
    await store.conditional_update(visit.id, 1, {'notes': 'server', 'version': 2})
    conflict = await interleaved_engine.attempt_update(visit.id, {'notes': 'local'}, 1)
    writes_before = len(interleaving_store.updates)

    outcome = await interleaved_resolver.resolve(conflict, 'use_server')

    assert outcome.resolution is Resolution.USE_SERVER
    assert outcome.record == conflict.server
    assert len(interleaving_store.updates) == writes_before
    stored = await store.read(visit.id)
    assert stored.version == 2
    assert stored.fields['notes'] == 'server'


@pytest.mark.asyncio
async def test_use_local_reapplies_only_the_local_patch(store, interleaving_store, interleaved_engine, interleaved_resolver):
    visit = await _visit(store)
    # Another writer changes a field the local edit never touched.
    await store.conditional_update(visit.id, 1, {'diagnosis': 'cold', 'version': 2})
    conflict = await interleaved_engine.attempt_update(visit.id, {'notes': 'local note'}, 1)
    writes_before = len(interleaving_store.updates)

    outcome = await interleaved_resolver.resolve(conflict, Resolution.USE_LOCAL)

    assert outcome.settled
    reapplied = interleaving_store.updates[writes_before:]
    assert len(reapplied) == 1
    visit_id, expected_version, values = reapplied[0]
    assert expected_version == 2
    assert set(values) == {'notes', 'version', 'updated_at'}
    stored = await store.read(visit.id)
    assert stored.version == 3
    assert stored.fields['notes'] == 'local note'
    assert stored.fields['diagnosis'] == 'cold'


@pytest.mark.asyncio
async def test_use_local_that_loses_again_returns_a_new_conflict(store, interleaving_store, interleaved_engine, interleaved_resolver, bus):
    visit = await _visit(store)
    await store.conditional_update(visit.id, 1, {'notes': 'v2', 'version': 2})
    conflict = await interleaved_engine.attempt_update(visit.id, {'notes': 'local'}, 1)

    interleaving_store.before_update.append(_bump(store, visit.id, notes='v3'))
    outcome = await interleaved_resolver.resolve(conflict, Resolution.USE_LOCAL)

    assert not outcome.settled
    assert outcome.next_conflict.expected_version == 2
    assert outcome.next_conflict.server_version == 3
    assert outcome.next_conflict.local_patch == {'notes': 'local'}
    stored = await store.read(visit.id)
    assert stored.version == 3
    assert stored.fields['notes'] == 'v3'
    latest = bus.recent(1)[0]
    assert latest.type is EventType.RESOLUTION
    assert 'resolution required again' in latest.details


@pytest.mark.asyncio
async def test_resolution_events_name_the_branch(store, engine, resolver, bus):
    visit = await _visit(store)
    await engine.attempt_update(visit.id, {'notes': 'A'}, 1)
    conflict = await engine.attempt_update(visit.id, {'notes': 'B'}, 1)

    await resolver.resolve(conflict, Resolution.USE_SERVER)
    assert bus.recent(1)[0].details == 'Kept server version 2; local changes discarded'

    await resolver.resolve(conflict, Resolution.USE_LOCAL)
    assert bus.recent(1)[0].details == 'Reapplied local changes on version 2; now at version 3'


@pytest.mark.asyncio
async def test_compare_shows_local_and_server_without_bookkeeping(store, engine, resolver):
    visit = await _visit(store)
    await engine.attempt_update(visit.id, {'diagnosis': 'cold'}, 1)
    conflict = await engine.attempt_update(visit.id, {'notes': 'mine', 'version': 1}, 1)

    view = resolver.compare(conflict)

    assert view.server_version == 2
    assert view.expected_version == 1
    assert view.local['notes'] == 'mine'
    assert view.local['diagnosis'] == 'cold'
    assert view.server['notes'] == 'a'
    assert view.differing == ['notes']
    for key in ('id', 'owner_id', 'version', 'created_at', 'updated_at'):
        assert key not in view.local
        assert key not in view.server
    assert view.to_dict()['serverVersion'] == 2


@pytest.mark.asyncio
async def test_settle_retries_use_local_until_it_sticks(store, interleaving_store, interleaved_engine, interleaved_resolver):
    visit = await _visit(store)
    await store.conditional_update(visit.id, 1, {'notes': 'v2', 'version': 2})
    conflict = await interleaved_engine.attempt_update(visit.id, {'notes': 'local'}, 1)
    interleaving_store.before_update.append(_bump(store, visit.id, diagnosis='cold'))

    result = await interleaved_resolver.settle(conflict, prefer_local)

    assert result.resolved
    assert result.rounds == 2
    stored = await store.read(visit.id)
    assert stored.version == 4
    assert stored.fields['notes'] == 'local'
    assert stored.fields['diagnosis'] == 'cold'


@pytest.mark.asyncio
async def test_settle_with_ask_user_leaves_conflict_pending(store, engine, resolver):
    visit = await _visit(store)
    await engine.attempt_update(visit.id, {'notes': 'A'}, 1)
    conflict = await engine.attempt_update(visit.id, {'notes': 'B'}, 1)

    result = await resolver.settle(conflict, ask_user)

    assert not result.resolved
    assert result.rounds == 0
    assert result.pending is conflict
    assert (await store.read(visit.id)).version == 2


@pytest.mark.asyncio
async def test_settle_with_prefer_server_keeps_server_record(store, engine, resolver):
    visit = await _visit(store)
    await engine.attempt_update(visit.id, {'notes': 'A'}, 1)
    conflict = await engine.attempt_update(visit.id, {'notes': 'B'}, 1)

    result = await resolver.settle(conflict, prefer_server)

    assert result.resolved
    assert result.outcome.record.fields['notes'] == 'A'


@pytest.mark.asyncio
async def test_settle_gives_up_after_max_rounds(store, interleaving_store, interleaved_engine):
    resolver = ConflictResolver(interleaved_engine, max_rounds=2)
    visit = await _visit(store)
    await store.conditional_update(visit.id, 1, {'notes': 'v2', 'version': 2})
    conflict = await interleaved_engine.attempt_update(visit.id, {'notes': 'local'}, 1)
    interleaving_store.before_update.extend(
        [_bump(store, visit.id, notes='v3'), _bump(store, visit.id, notes='v4')]
    )

    with pytest.raises(VersionConflictError) as excinfo:
        await resolver.settle(conflict, prefer_local)

    assert excinfo.value.conflict.server_version == 4
    assert 'after 2 resolution attempt(s)' in str(excinfo.value)
    assert (await store.read(visit.id)).fields['notes'] == 'v4'


def test_resolver_requires_positive_round_limit(engine):
    with pytest.raises(ValueError):
        ConflictResolver(engine, max_rounds=0)


@pytest.mark.asyncio
@pytest.mark.parametrize('bad_limit', [0, -2])
async def test_settle_rejects_explicit_non_positive_round_limit(store, engine, resolver, bad_limit):
    visit = await _visit(store)
    await store.conditional_update(visit.id, 1, {'notes': 'v2', 'version': 2})
    conflict = await engine.attempt_update(visit.id, {'notes': 'local'}, 1)

    with pytest.raises(ValueError):
        await resolver.settle(conflict, prefer_local, max_rounds=bad_limit)
    assert (await store.read(visit.id)).version == 2
