import pytest

from tubegrab.exceptions import URLExtractionError
from tubegrab.url_extractor import URLInfoExtractor


@pytest.fixture
def extractor(dependencies):
    return URLInfoExtractor(dependencies.yt_dlp_path, timeout=20)


async def test_get_info_formats_fields(extractor):
    info = await extractor.get_info('https://example.com/watch?v=abc123')
    assert info == {
        'id': 'abc123',
        'title': 'Fake Title',
        'author': 'Fake Channel',
        'thumbnail': 'https://i.ytimg.com/vi/abc123/hqdefault.jpg',
        'duration': '1:02:05',
        'views': '1.2M',
    }


async def test_get_info_failure_uses_error_line(extractor):
    with pytest.raises(URLExtractionError) as exc_info:
        await extractor.get_info('https://example.com/bad')
    assert str(exc_info.value).startswith('[generic] Unsupported URL')


async def test_get_title(extractor):
    assert await extractor.get_title('https://example.com/watch?v=1') == 'Fake Title: Episode/1?'


async def test_missing_executable(tmp_path):
    extractor = URLInfoExtractor(tmp_path / 'missing-yt-dlp')
    with pytest.raises(URLExtractionError, match='not found'):
        await extractor.get_title('https://example.com/watch?v=1')


def test_parse_error_fallbacks(tmp_path):
    extractor = URLInfoExtractor(tmp_path / 'yt-dlp')
    assert extractor._parse_yt_dlp_error('') == 'yt-dlp returned an error with no output.'
    assert extractor._parse_yt_dlp_error('WARNING: x\nsomething broke') == 'something broke'
    assert len(extractor._parse_yt_dlp_error('ERROR: ' + 'x' * 500)) == 203
