import sys
import textwrap
from pathlib import Path

import pytest

from tubegrab.config import Settings
from tubegrab.dependencies import DependencyManager
from tubegrab.jobs import JobStore

# Stands in for yt-dlp. The URL decides the behaviour:
#   bad        -> ERROR line and exit code 1
#   slow       -> hangs long enough to hit any test timeout
#   noprogress -> produces the file without printing percentages
#   mkv        -> produces <id>.mkv instead of the requested extension
#   nofile     -> exits 0 without producing anything
#   partial    -> leaves a .part file behind and fails
#   notitle    -> title lookup fails, download works
#   longline   -> prints one line longer than the reader buffer, then hangs
FAKE_YT_DLP = textwrap.dedent('''\
    import json
    import sys
    import time

    args = sys.argv[1:]
    url = args[-1] if args else ''

    def fail(message):
        print('ERROR: ' + message, file=sys.stderr, flush=True)
        sys.exit(1)

    if '--version' in args:
        print('2024.01.01')
        sys.exit(0)

    if '--print' in args:
        if 'bad' in url or 'notitle' in url:
            fail('[generic] Unsupported URL: ' + url)
        print('Fake Title: Episode/1?')
        sys.exit(0)

    if '--dump-json' in args:
        if 'bad' in url:
            fail('[generic] Unsupported URL: ' + url)
        print(json.dumps({
            'id': 'abc123',
            'title': 'Fake Title',
            'uploader': 'Fake Channel',
            'duration': 3725,
            'view_count': 1234567,
        }))
        sys.exit(0)

    template = args[args.index('-o') + 1]
    ext = 'mp3' if '--audio-format' in args else 'mp4'

    if 'bad' in url:
        fail('[generic] Unsupported URL: ' + url)
    if 'slow' in url:
        time.sleep(60)
    if 'longline' in url:
        print('x' * 200000, flush=True)
        time.sleep(60)
    if 'nofile' in url:
        sys.exit(0)
    if 'partial' in url:
        open(template.replace('%(ext)s', ext + '.part'), 'wb').write(b'x')
        fail('Download interrupted')
    if 'mkv' in url:
        ext = 'mkv'

    if 'noprogress' not in url:
        print('[youtube] abc123: Downloading webpage', flush=True)
        for pct in (10.0, 45.5, 100.0):
            print('PROGRESS::  %.1f%%' % pct, flush=True)
    if ext == 'mp3':
        print('[ExtractAudio] Destination: ' + template.replace('%(ext)s', ext), flush=True)
    else:
        print('[Merger] Merging formats into "' + template.replace('%(ext)s', ext) + '"', flush=True)

    with open(template.replace('%(ext)s', ext), 'wb') as f:
        f.write(b'\\x00' * 2048)
''')


def write_fake_yt_dlp(bin_dir: Path) -> Path:
    bin_dir.mkdir(parents=True, exist_ok=True)
    path = bin_dir / 'yt-dlp'
    path.write_text(f"#!{sys.executable}\n{FAKE_YT_DLP}", encoding='utf-8')
    path.chmod(0o755)
    return path


@pytest.fixture
def download_dir(tmp_path):
    path = tmp_path / 'downloads'
    path.mkdir()
    return path


@pytest.fixture
def bin_dir(tmp_path):
    path = tmp_path / 'bin'
    write_fake_yt_dlp(path)
    return path


@pytest.fixture
def dependencies(bin_dir):
    deps = DependencyManager(bin_dir)
    deps.find_yt_dlp()
    return deps


@pytest.fixture
def store():
    return JobStore()


@pytest.fixture
def settings(tmp_path, download_dir, bin_dir):
    return Settings(
        download_dir=download_dir,
        bin_dir=bin_dir,
        log_dir=tmp_path / 'logs',
        job_timeout_seconds=20,
        metadata_timeout_seconds=20,
        rate_limit_requests=100,
        progress_interval_seconds=0.05,
        download_grace_seconds=0.05,
        janitor_interval_seconds=3600,
        check_for_updates_on_startup=False,
    )
