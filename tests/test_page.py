import pytest

import tokybook_downloader as tbd

PAGE = """
<html><head><title>Tokybook</title></head>
<body>
<div class="page-hero" style="padding-top: 20%; background-image: url(&quot;/wp-content/covers/my-book.jpg&quot;);">
  <div class="inside-page-hero grid-container grid-parent">
    <h1>
      My Book
    </h1>
  </div>
</div>
<script>var analytics = true;</script>
<script>
tracks = [
  {"track": 1, "name": "welcome", "chapter_link_dropbox": "welcome.mp3",},
  {"track": 2, "name": "Intro", "chapter_link_dropbox": "my book/01.mp3"}
]
</script>
</body></html>
"""


def test_extract_book_title_strips_whitespace() -> None:
    soup = tbd.make_soup(PAGE)
    assert tbd.extract_book_title(soup) == "My Book"


def test_extract_book_title_missing_heading() -> None:
    soup = tbd.make_soup("<html><body><h1>Search results</h1></body></html>")
    assert tbd.extract_book_title(soup) is None


def test_extract_scripts_feeds_resolver() -> None:
    soup = tbd.make_soup(PAGE)
    scripts = tbd.extract_scripts(soup)
    assert scripts[0] == "var analytics = true;"
    chapters = tbd.resolve_chapters(scripts)
    assert list(chapters) == [2]
    assert chapters[2].media_path == "my%20book%2F01.mp3"


def test_extract_cover_url_resolves_relative_url() -> None:
    soup = tbd.make_soup(PAGE)
    assert tbd.extract_cover_url(soup, "https://tokybook.com/my-book/") == (
        "https://tokybook.com/wp-content/covers/my-book.jpg"
    )


def test_extract_cover_url_accepts_unquoted_absolute_url() -> None:
    soup = tbd.make_soup(
        '<div class="page-hero" style="background: #000 url(https://cdn.test/c.png) no-repeat"></div>'
    )
    assert tbd.extract_cover_url(soup) == "https://cdn.test/c.png"


def test_extract_cover_url_without_background() -> None:
    soup = tbd.make_soup('<div class="page-hero" style="padding-top: 5%"></div>')
    assert tbd.extract_cover_url(soup) is None


def test_extract_cover_url_without_hero() -> None:
    assert tbd.extract_cover_url(tbd.make_soup("<div></div>")) is None


def test_fetch_page_raises_on_http_error(scraper) -> None:
    with pytest.raises(tbd.PageFetchError, match="404"):
        tbd.fetch_page("https://tokybook.com/missing", scraper)


def test_make_scraper_sets_site_headers_and_cookies() -> None:
    session = tbd.make_scraper("a=1; b=two=2")
    assert session.headers["Referer"] == tbd.SITE_URL
    assert session.headers["Origin"] == tbd.SITE_URL
    assert session.cookies.get("a") == "1"
    assert session.cookies.get("b") == "two=2"
