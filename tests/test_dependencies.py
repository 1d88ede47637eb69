import asyncio
import sys

import pytest
from aiohttp import web

from tubegrab import dependencies as dependencies_module
from tubegrab.dependencies import DependencyManager
from tubegrab.exceptions import DependencyError, DownloadCancelledError

BINARY = b'#!/bin/sh\necho 2099.01.01\n'


@pytest.fixture
async def release_server(aiohttp_server):
    hits = []

    async def serve_binary(request):
        hits.append(request.path)
        return web.Response(body=BINARY)

    async def broken(request):
        hits.append(request.path)
        return web.Response(status=500)

    app = web.Application()
    app.router.add_get('/yt-dlp', serve_binary)
    app.router.add_get('/broken/yt-dlp', broken)
    server = await aiohttp_server(app)
    server.hits = hits
    return server


def point_release_at(monkeypatch, url):
    monkeypatch.setattr(dependencies_module, 'YT_DLP_URLS', {sys.platform: str(url)})


def test_prefers_binary_in_bin_dir(bin_dir):
    deps = DependencyManager(bin_dir)
    assert deps.find_yt_dlp() == bin_dir / 'yt-dlp'
    assert deps.tool_ready


async def test_initialize_without_binary(tmp_path, monkeypatch):
    monkeypatch.setattr(dependencies_module.shutil, 'which', lambda name: None)
    deps = DependencyManager(tmp_path / 'bin')
    await deps.initialize()
    assert deps.yt_dlp_path is None
    assert deps.ffmpeg_path is None
    assert not deps.tool_ready


async def test_get_version(dependencies):
    assert await dependencies.get_version(dependencies.yt_dlp_path) == '2024.01.01'
    assert await dependencies.get_version(None) == 'Not found'


async def test_ensure_downloads_missing_binary(tmp_path, monkeypatch, release_server):
    monkeypatch.setattr(dependencies_module.shutil, 'which', lambda name: None)
    point_release_at(monkeypatch, release_server.make_url('/yt-dlp'))
    deps = DependencyManager(tmp_path / 'bin')

    path = await deps.ensure_yt_dlp()

    assert path == tmp_path / 'bin' / 'yt-dlp'
    assert path.read_bytes() == BINARY
    assert path.stat().st_mode & 0o111
    assert not (tmp_path / 'bin' / 'yt-dlp.download').exists()

    # Known binary: no second download.
    await deps.ensure_yt_dlp()
    assert release_server.hits == ['/yt-dlp']


async def test_ensure_raises_when_download_fails(tmp_path, monkeypatch, release_server):
    monkeypatch.setattr(dependencies_module.shutil, 'which', lambda name: None)
    monkeypatch.setattr(DependencyManager, 'DOWNLOAD_RETRY_ATTEMPTS', 1)
    point_release_at(monkeypatch, release_server.make_url('/broken/yt-dlp'))
    deps = DependencyManager(tmp_path / 'bin')

    with pytest.raises(DependencyError, match='Network error'):
        await deps.ensure_yt_dlp()
    assert not deps.tool_ready


@pytest.fixture
def stalled_manager(tmp_path, monkeypatch):
    monkeypatch.setattr(dependencies_module.shutil, 'which', lambda name: None)
    deps = DependencyManager(tmp_path / 'bin')

    async def slow_download(session, url, save_path):
        await asyncio.sleep(30)

    monkeypatch.setattr(deps, '_download_file', slow_download)
    return deps


async def wait_for_download_to_start(deps):
    while deps.download_task is None:
        await asyncio.sleep(0.01)


async def test_cancel_download_fails_waiting_callers(stalled_manager):
    waiters = [asyncio.create_task(stalled_manager.ensure_yt_dlp()) for _ in range(2)]
    await asyncio.wait_for(wait_for_download_to_start(stalled_manager), timeout=5)

    stalled_manager.cancel_download()

    for waiter in waiters:
        with pytest.raises(DownloadCancelledError):
            await asyncio.wait_for(waiter, timeout=5)


async def test_cancelled_caller_leaves_download_running(stalled_manager):
    waiter = asyncio.create_task(stalled_manager.ensure_yt_dlp())
    await asyncio.wait_for(wait_for_download_to_start(stalled_manager), timeout=5)
    provisioning = stalled_manager.download_task

    waiter.cancel()
    with pytest.raises(asyncio.CancelledError):
        await waiter
    await asyncio.sleep(0.05)
    assert not provisioning.done()

    stalled_manager.cancel_download()
    await asyncio.gather(provisioning, return_exceptions=True)
    assert stalled_manager.download_task is None
