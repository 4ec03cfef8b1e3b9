"""Tests for version state persistence and at-most-once announcements."""

import json

import pytest

from hubwatch import ChangeTracker, StateStore, VersionState


@pytest.fixture
def store(tmp_path):
    return StateStore(str(tmp_path / "data" / "versions.json"))


@pytest.fixture
def tracker(store):
    return ChangeTracker(store)


def _read(store):
    return json.loads(store.path.read_text())


class TestStateStore:

    def test_missing_file_is_empty_state(self, store):
        state = store.load()
        assert state.images == {}
        assert state.announced == {}

    def test_save_creates_parent_directory(self, store):
        store.save(VersionState(images={'nginx': '1.25.0'}, announced={'nginx': True}))
        assert _read(store) == {'images': {'nginx': '1.25.0'}, 'announced': {'nginx': True}}

    def test_load_reads_saved_state(self, store):
        store.path.parent.mkdir(parents=True)
        store.path.write_text(json.dumps({
            'images': {'redis': '7.2.3'},
            'announced': {'redis': True},
        }))
        state = store.load()
        assert state.images == {'redis': '7.2.3'}
        assert state.announced == {'redis': True}

    def test_invalid_json_starts_fresh(self, store, caplog):
        store.path.parent.mkdir(parents=True)
        store.path.write_text('{not json')
        with caplog.at_level('WARNING'):
            state = store.load()
        assert state == VersionState()
        assert 'starting fresh' in caplog.text

    @pytest.mark.parametrize('payload', [
        {'images': {}},
        {'images': {'nginx': 1}, 'announced': {}},
        {'images': {}, 'announced': {'nginx': 'yes'}},
        ['nginx'],
    ])
    def test_schema_violation_starts_fresh(self, store, payload):
        store.path.parent.mkdir(parents=True)
        store.path.write_text(json.dumps(payload))
        assert store.load() == VersionState()

    def test_no_temp_or_lock_file_left_behind(self, store):
        store.save(VersionState())
        leftovers = sorted(p.name for p in store.path.parent.iterdir())
        assert leftovers == ['versions.json']

    def test_dry_run_does_not_write(self, tmp_path):
        store = StateStore(str(tmp_path / "versions.json"), dry_run=True)
        store.save(VersionState(images={'nginx': '1'}, announced={'nginx': True}))
        assert not store.path.exists()


class TestChangeTracker:

    def test_new_tag_notifies(self, tracker):
        state = VersionState()
        assert tracker.evaluate('nginx', '1.25.0', '1.25.1', state) is True
        assert state.images == {'nginx': '1.25.1'}
        assert state.announced == {'nginx': True}

    def test_second_evaluation_is_quiet(self, tracker):
        state = VersionState()
        assert tracker.evaluate('nginx', '1.25.0', '1.25.1', state) is True
        assert tracker.evaluate('nginx', '1.25.0', '1.25.1', state) is False

    def test_already_announced_tag_stays_quiet(self, tracker):
        state = VersionState(images={'nginx': '1.25.0'}, announced={'nginx': True})
        assert tracker.evaluate('nginx', '1.24.0', '1.25.0', state) is False
        assert state.images == {'nginx': '1.25.0'}

    def test_newer_tag_after_announcement_notifies_once(self, tracker, store):
        state = VersionState(images={'nginx': '1.25.0'}, announced={'nginx': True})

        assert tracker.evaluate('nginx', '1.25.0', '1.25.1', state) is True
        assert tracker.evaluate('nginx', '1.25.0', '1.25.1', state) is False
        assert _read(store) == {'images': {'nginx': '1.25.1'}, 'announced': {'nginx': True}}

    def test_up_to_date_records_without_notifying(self, tracker, store, caplog):
        state = VersionState()
        with caplog.at_level('INFO'):
            assert tracker.evaluate('redis', '7.2.3', '7.2.3', state) is False
        assert 'redis:7.2.3 is up to date' in caplog.text
        assert _read(store) == {'images': {'redis': '7.2.3'}, 'announced': {'redis': True}}

    def test_unannounced_entry_notifies(self, tracker):
        state = VersionState(images={'nginx': '1.25.1'}, announced={})
        assert tracker.evaluate('nginx', '1.25.0', '1.25.1', state) is True

    def test_each_evaluation_is_persisted(self, tracker, store):
        state = VersionState()
        tracker.evaluate('nginx', '1.25.0', '1.25.1', state)
        assert _read(store)['images'] == {'nginx': '1.25.1'}
        tracker.evaluate('redis', '7', '7.2.3', state)
        assert _read(store)['images'] == {'nginx': '1.25.1', 'redis': '7.2.3'}

    def test_state_survives_restart(self, tracker, store):
        tracker.evaluate('nginx', '1.25.0', '1.25.1', VersionState())
        reloaded = store.load()
        assert ChangeTracker(store).evaluate('nginx', '1.25.0', '1.25.1', reloaded) is False

    def test_save_failure_is_logged_and_state_kept(self, tmp_path, caplog):
        blocker = tmp_path / "blocker"
        blocker.write_text('')
        tracker = ChangeTracker(StateStore(str(blocker / "versions.json")))
        state = VersionState()

        with caplog.at_level('ERROR'):
            assert tracker.evaluate('nginx', '1.25.0', '1.25.1', state) is True

        assert 'Error saving state' in caplog.text
        assert state.images == {'nginx': '1.25.1'}
        assert tracker.evaluate('nginx', '1.25.0', '1.25.1', state) is False
