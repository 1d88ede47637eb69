import pytest

from tubegrab.exceptions import InvalidRequestError
from tubegrab.formatting import (
    content_disposition, format_duration, format_views, guess_media_type, sanitize_title,
    validate_media_url,
)


@pytest.mark.parametrize('seconds, expected', [
    (None, '0:00'),
    (0, '0:00'),
    (59, '0:59'),
    (61, '1:01'),
    (3599.9, '59:59'),
    (3600, '1:00:00'),
    (3725, '1:02:05'),
    ('nonsense', '0:00'),
])
def test_format_duration(seconds, expected):
    assert format_duration(seconds) == expected


@pytest.mark.parametrize('count, expected', [
    (None, '0'),
    (999, '999'),
    (1500, '1.5K'),
    (1234567, '1.2M'),
    (2500000000, '2.5B'),
    ('12', '12'),
    ('abc', '0'),
])
def test_format_views(count, expected):
    assert format_views(count) == expected


def test_sanitize_title():
    assert sanitize_title('Fake Title: Episode/1?') == 'Fake Title Episode1'
    assert sanitize_title('  spaced \n\t out  ') == 'spaced out'
    assert sanitize_title('<>:"/\\|?*') == 'video'
    assert sanitize_title(None) == 'video'
    assert len(sanitize_title('x' * 200)) == 80


def test_validate_media_url():
    assert validate_media_url(' https://example.com/watch?v=1 ') == 'https://example.com/watch?v=1'
    for bad in ('', None, 'not-a-video-url', 'ftp://example.com/x', 'https://'):
        with pytest.raises(InvalidRequestError):
            validate_media_url(bad)


def test_content_disposition_has_ascii_and_utf8_names():
    header = content_disposition('Café "Live".mp3')
    assert header.startswith('attachment; filename="Caf Live.mp3"')
    assert "filename*=UTF-8''Caf%C3%A9%20%22Live%22.mp3" in header


def test_content_disposition_non_ascii_title():
    assert 'filename="download.mp3"' in content_disposition('日本語.mp3')


def test_guess_media_type():
    assert guess_media_type('a.mp3') == 'audio/mpeg'
    assert guess_media_type('a.MP4') == 'video/mp4'
    assert guess_media_type('a.mkv') == 'video/x-matroska'
    assert guess_media_type('a.unknownext') == 'application/octet-stream'
