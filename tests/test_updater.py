from unittest.mock import MagicMock, patch

import requests

from tubegrab.updater import YtDlpUpdater


def fake_response(payload):
    response = MagicMock()
    response.json.return_value = payload
    response.raise_for_status.return_value = None
    return response


def test_fetch_latest_version_strips_prefix(dependencies):
    updater = YtDlpUpdater(dependencies)
    with patch('tubegrab.updater.requests.get', return_value=fake_response({'tag_name': 'v2099.01.01'})):
        assert updater.fetch_latest_version() == '2099.01.01'


def test_fetch_latest_version_handles_network_errors(dependencies):
    updater = YtDlpUpdater(dependencies)
    with patch('tubegrab.updater.requests.get', side_effect=requests.exceptions.ConnectionError('offline')):
        assert updater.fetch_latest_version() is None


def test_fetch_latest_version_handles_odd_payloads(dependencies):
    updater = YtDlpUpdater(dependencies)
    with patch('tubegrab.updater.requests.get', return_value=fake_response(['not', 'a', 'dict'])):
        assert updater.fetch_latest_version() is None
    with patch('tubegrab.updater.requests.get', return_value=fake_response({})):
        assert updater.fetch_latest_version() is None


async def test_updates_when_newer_release_exists(dependencies):
    updater = YtDlpUpdater(dependencies)
    updater.fetch_latest_version = lambda: '2099.01.01'
    calls = []

    async def install():
        calls.append(True)
        return {'type': 'yt-dlp', 'success': True, 'path': str(dependencies.yt_dlp_path)}

    dependencies.install_or_update_yt_dlp = install
    assert await updater.check_and_update() is True
    assert calls == [True]


async def test_skips_when_current(dependencies):
    updater = YtDlpUpdater(dependencies)
    updater.fetch_latest_version = lambda: '2024.01.01'

    async def install():
        raise AssertionError("should not reinstall")

    dependencies.install_or_update_yt_dlp = install
    assert await updater.check_and_update() is False
