from shieldfetch.workflows.challenge_detector import BODY_SNAPSHOT_CHARS, challenge_url, detect


INTERSTITIAL = """<!DOCTYPE html><html><head><title>Just a moment...</title>
<meta http-equiv="refresh" content="8;URL=/cdn-cgi/l/chk_jschl?__cf_chl_tk=abc">
<script src="/cdn-cgi/challenge-platform/h/g/orchestrate/jsch/v1"></script></head>
<body><form id="challenge-form" action="/verify?__cf_chl_f_tk=xyz" method="POST"></form>
<div class="cf-turnstile"></div></body></html>"""


def test_challenge_status_codes_mark_challenge() -> None:
    for status in (403, 503):
        verdict = detect(status, "")
        assert verdict.is_challenge
        assert verdict.status_code == status
        assert verdict.indicators


def test_rate_limit_is_indicator_only() -> None:
    verdict = detect(429, "<html>slow down</html>")
    assert not verdict.is_challenge
    assert "429 Rate limit" in verdict.indicators


def test_plain_200_page_is_not_challenge() -> None:
    verdict = detect(200, "<html><head><title>Chapter 12</title></head><body>ok</body></html>")
    assert not verdict.is_challenge
    assert verdict.indicators == ()


def test_keyword_marks_challenge_on_200() -> None:
    verdict = detect(200, "<div>Please verify you are human</div>")
    assert verdict.is_challenge
    assert any("verify you are human" in i for i in verdict.indicators)


def test_just_a_moment_counts_only_in_title() -> None:
    assert not detect(200, "<p>just a moment, loading comments</p>").is_challenge
    assert detect(200, "<title>Just a moment...</title>").is_challenge


def test_platform_script_alone_does_not_mark_challenge() -> None:
    body = '<html><script src="/cdn-cgi/challenge-platform/scripts/jsd/main.js"></script>ok</html>'
    verdict = detect(200, body)
    assert not verdict.is_challenge
    assert "challenge platform script" not in verdict.indicators


def test_platform_script_corroborates_other_signals() -> None:
    verdict = detect(503, '<script src="/cdn-cgi/challenge-platform/x.js"></script>')
    assert verdict.is_challenge
    assert "challenge platform script" in verdict.indicators


def test_cloudflare_server_header_is_informational() -> None:
    verdict = detect(200, "<html>fine</html>", {"server": "cloudflare"})
    assert not verdict.is_challenge
    assert "cloudflare server header" in verdict.indicators


def test_interstitial_details_are_extracted() -> None:
    verdict = detect(503, INTERSTITIAL.encode("utf-8"))
    assert verdict.is_challenge
    assert verdict.meta_redirect == "/cdn-cgi/l/chk_jschl?__cf_chl_tk=abc"
    assert verdict.form_action == "/verify?__cf_chl_f_tk=xyz"
    assert verdict.turnstile
    assert "cf_chl_tk" in verdict.tokens
    assert "cf_chl_f_tk" in verdict.tokens


def test_meta_refresh_without_other_signals_is_challenge() -> None:
    body = '<html><head><meta http-equiv="refresh" content="0; url=/next"></head></html>'
    verdict = detect(200, body)
    assert verdict.is_challenge
    assert verdict.meta_redirect == "/next"


def test_empty_body_only_uses_status() -> None:
    assert not detect(200, b"").is_challenge
    assert not detect(200, "   \n").is_challenge
    assert detect(403, None).is_challenge


def test_body_snapshot_is_truncated() -> None:
    verdict = detect(200, "x" * (BODY_SNAPSHOT_CHARS * 3))
    assert len(verdict.body_snapshot) == BODY_SNAPSHOT_CHARS


def test_detection_is_deterministic() -> None:
    assert detect(503, INTERSTITIAL) == detect(503, INTERSTITIAL)


def test_challenge_url_priority() -> None:
    original = "https://example.com/series/1"
    verdict = detect(503, INTERSTITIAL)
    assert challenge_url(verdict, original) == "https://example.com/cdn-cgi/l/chk_jschl?__cf_chl_tk=abc"

    form_only = detect(403, '<form id="challenge-form" action="/verify" method="POST"></form>')
    assert challenge_url(form_only, original) == "https://example.com/verify"

    assert challenge_url(detect(403, ""), original) == original
