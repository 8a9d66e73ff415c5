"""Tests for portal response classification."""
from conftest import AVAILABLE_PAGE, CHALLENGE_PAGE, REGISTERED_PAGE

from regularize.fetch.endpoints import cadastro_url, portal_root
from regularize.parse.classifier import (
    ClassifierRules,
    ResponseClassifier,
    classify_content,
    classify_url,
    detect_challenge,
    extract_site_key,
    page_text,
)
from regularize.parse.models import ClassificationMethod


def _classify(status_code, body, headers=None):
    url = cadastro_url()
    return ResponseClassifier().classify(status_code, headers or {}, body, final_url=url, submitted_url=url)


def test_redirect_to_root_is_registered():
    """302 to the portal root means the CNPJ already has an account."""
    result = _classify(302, "", {"location": "/"})
    assert result.registered is True
    assert result.method == ClassificationMethod.REDIRECT
    assert result.final_url == portal_root()


def test_redirect_beats_form_keywords():
    """The redirect target wins even when the body looks like the available form."""
    result = _classify(302, AVAILABLE_PAGE, {"location": "/login"})
    assert result.registered is True
    assert result.method == ClassificationMethod.REDIRECT


def test_redirect_beats_challenge_markup():
    result = _classify(302, CHALLENGE_PAGE, {"location": "/dashboard"})
    assert result.registered is True
    assert not result.is_challenge


def test_redirect_to_continue_path_is_available():
    result = _classify(302, "", {"location": "/cadastro/dados-pessoais"})
    assert result.registered is False
    assert result.method == ClassificationMethod.REDIRECT


def test_redirect_without_location_falls_back_to_content():
    result = _classify(302, REGISTERED_PAGE)
    assert result.registered is True
    assert result.method == ClassificationMethod.CONTENT


def test_redirect_to_unknown_path_falls_back_to_content():
    result = _classify(302, AVAILABLE_PAGE, {"location": "/aviso"})
    assert result.registered is False
    assert result.method == ClassificationMethod.CONTENT


def test_final_url_change_counts_as_redirect():
    """A response whose final URL differs from the submitted one is treated as redirected."""
    result = ResponseClassifier().classify(
        200, {}, AVAILABLE_PAGE, final_url=portal_root(), submitted_url=cadastro_url()
    )
    assert result.registered is True
    assert result.method == ClassificationMethod.REDIRECT


def test_registered_keyword():
    result = _classify(200, REGISTERED_PAGE)
    assert result.registered is True
    assert result.method == ClassificationMethod.CONTENT
    assert "já está cadastrado" in result.evidence


def test_available_keyword():
    result = _classify(200, AVAILABLE_PAGE)
    assert result.registered is False
    assert result.method == ClassificationMethod.CONTENT


def test_neither_keyword_defaults_to_available_uncertain():
    """A 200 page without any known phrase is available, flagged uncertain."""
    result = _classify(200, "<html><body><p>Bem-vindo</p></body></html>")
    assert result.registered is False
    assert result.method == ClassificationMethod.UNCERTAIN


def test_both_keyword_sets_is_uncertain():
    result = _classify(200, REGISTERED_PAGE + AVAILABLE_PAGE)
    assert result.registered is False
    assert result.method == ClassificationMethod.UNCERTAIN


def test_empty_body_is_uncertain():
    registered, method, evidence = classify_content("", ClassifierRules.from_config())
    assert registered is False
    assert method == ClassificationMethod.UNCERTAIN
    assert evidence == "empty body"


def test_challenge_detected_with_site_key():
    result = _classify(200, CHALLENGE_PAGE)
    assert result.is_challenge
    assert result.registered is None
    assert result.method == ClassificationMethod.CHALLENGE
    assert result.challenge.site_key == "site-key-abc"
    assert result.challenge.kind == "hcaptcha"


def test_recaptcha_kind():
    html = '<div class="g-recaptcha" data-sitekey="re-key"></div>'
    challenge = detect_challenge(html)
    assert challenge.kind == "recaptcha"
    assert challenge.site_key == "re-key"


def test_no_challenge_in_plain_page():
    assert detect_challenge(AVAILABLE_PAGE) is None
    assert detect_challenge(None) is None


def test_extract_site_key_from_script():
    html = "<script>hcaptcha.render('box', { sitekey: 'script-key-123' })</script>"
    assert extract_site_key(html) == "script-key-123"


def test_page_text_ignores_scripts():
    """Keywords inside scripts are not page text."""
    html = "<html><body><script>var msg = 'já cadastrado';</script><p>Olá</p></body></html>"
    assert "já cadastrado" not in page_text(html)
    assert page_text(html) == "olá"


def test_classify_url_rules():
    rules = ClassifierRules.from_config()
    assert classify_url("https://portal.example/", rules) is True
    assert classify_url("https://portal.example/home", rules) is True
    assert classify_url("https://portal.example/cadastro?etapa=2", rules) is False
    assert classify_url("https://portal.example/aviso", rules) is None


def test_custom_rules():
    """Keyword lists are plain configuration."""
    rules = ClassifierRules(registered_keywords=["conta existente"], available_keywords=["novo cadastro"])
    classifier = ResponseClassifier(rules)
    result = classifier.classify(200, {}, "<p>Conta existente para este CNPJ</p>")
    assert result.registered is True


def test_classify_url_matches_whole_segments():
    """Marker words inside a longer segment do not mean an existing account."""
    rules = ClassifierRules.from_config()
    assert classify_url("https://portal.example/acesso-senha", rules) is None
    assert classify_url("https://portal.example/cadastro/homepage-cadastro", rules) is False
    assert classify_url("https://portal.example/cadastro/acesso-senha", rules) is False
    assert classify_url("https://portal.example/login.jsf", rules) is True
    assert classify_url("https://portal.example/portal/Dashboard/", rules) is True
