from page_loader import bs4_parse, extract_resources

PAGE = "https://a.test/courses"
DIR = "a-test-courses_files"

HTML = """<html><head>
<link rel="stylesheet" href="/assets/app.css">
<link rel="icon" href="/favicon.ico">
<link rel="Stylesheet alternate" href="https://a.test/alt.css">
<link rel="stylesheet" href="https://cdn.b.test/lib.css">
<script src="/packs/runtime.js"></script>
<script>console.log("inline")</script>
</head><body>
<img src="/assets/pic.png">
<img src="">
<img alt="no src">
<img src="data:image/png;base64,AAAA">
<img src="https://b.test/remote.png">
<a href="/courses/python">python</a>
</body></html>"""


def _extract(include_anchors=False):
    soup = bs4_parse(HTML)
    refs = extract_resources(soup, PAGE, DIR, include_anchors=include_anchors)
    return soup, refs


def test_only_local_resources_in_document_order():
    _, refs = _extract()
    assert [r.url for r in refs] == [
        "https://a.test/assets/app.css",
        "https://a.test/alt.css",
        "https://a.test/packs/runtime.js",
        "https://a.test/assets/pic.png",
    ]
    assert [r.attribute for r in refs] == ["href", "href", "src", "src"]


def test_attributes_rewritten_to_resources_dir():
    soup, refs = _extract()
    assert soup.find("img", src=True)["src"] == f"{DIR}/a-test-assets-pic.png"
    assert soup.find("script", src=True)["src"] == f"{DIR}/a-test-packs-runtime.js"
    for ref in refs:
        assert ref.tag[ref.attribute] == ref.relative_path
        assert ref.relative_path == f"{DIR}/{ref.file_name}"


def test_original_value_is_kept_on_ref():
    _, refs = _extract()
    assert refs[0].original == "/assets/app.css"


def test_external_and_skipped_values_untouched():
    soup, _ = _extract()
    assert soup.find("link", rel="icon")["href"] == "/favicon.ico"
    assert soup.find("link", href="https://cdn.b.test/lib.css") is not None
    assert soup.find("img", src="https://b.test/remote.png") is not None
    assert soup.find("img", src="data:image/png;base64,AAAA") is not None
    assert soup.find("a")["href"] == "/courses/python"


def test_anchors_are_opt_in():
    soup, refs = _extract(include_anchors=True)
    assert refs[-1].url == "https://a.test/courses/python"
    assert refs[-1].file_name == "a-test-courses-python.html"
    assert soup.find("a")["href"] == f"{DIR}/a-test-courses-python.html"


def test_fragment_dropped_before_naming():
    soup = bs4_parse('<html><body><img src="/i.png#x"></body></html>')
    refs = extract_resources(soup, PAGE, DIR)
    assert refs[0].url == "https://a.test/i.png"
    assert refs[0].file_name == "a-test-i.png"


def test_no_resources():
    soup = bs4_parse("<html><body><p>hi</p></body></html>")
    assert extract_resources(soup, PAGE, DIR) == []
