import pytest

from enclaver.policy.domain_filter import Domain, DomainFilter, Pattern

CASES = [
    (
        "example.com",
        ["example.com", "Example.COM"],
        ["example.net", ".example.com", "foo.com", "", "abc.example.com", "example."],
    ),
    (
        "*.com",
        ["example.com", "cnn.CoM"],
        ["example.net", "", "news.ycombinator.com", "beta.client1.saas.com", "example."],
    ),
    (
        "foo.*.com",
        ["foo.example.com"],
        ["example.net", "", "example.", "foo.bar.example.com", ".com"],
    ),
    (
        "**.amazonaws.com",
        ["kms.us-east-1.amazonaws.com", "s3.amazonaws.com"],
        ["amazonaws.com", "", "example.com"],
    ),
]

POSITIVES = [(pattern, d) for pattern, pos, _ in CASES for d in pos]
NEGATIVES = [(pattern, d) for pattern, _, neg in CASES for d in neg]


@pytest.mark.parametrize("pattern,domain", POSITIVES)
def test_pattern_matches_positive(pattern, domain):
    assert Pattern(pattern).matches(Domain(domain)) is True


@pytest.mark.parametrize("pattern,domain", NEGATIVES)
def test_pattern_matches_negative(pattern, domain):
    assert Pattern(pattern).matches(Domain(domain)) is False


def test_domain_filter():
    df = DomainFilter()
    df.add("example.com")
    df.add("*.net")
    df.add("foo.*.com")
    df.add("**.amazonaws.com")

    assert df.matches("example.com")
    assert not df.matches("cnn.com")
    assert df.matches("example.net")
    assert not df.matches("foo.bar.org")
    assert df.matches("kms.amazonaws.com")
    assert df.matches("kms.us-east-1.amazonaws.com")


def test_empty_filter_matches_nothing():
    df = DomainFilter()
    assert not df.matches("example.com")
    assert not df.matches("")


def test_allow_all_matches_any_nonempty_name():
    df = DomainFilter.allow_all()
    assert df.matches("example.com")
    assert df.matches("kms.us-east-1.amazonaws.com")
    assert df.matches("localhost")


def test_lowercasing_is_ascii_only():
    assert Domain("ÉXAMPLE.COM").parts == ("com", "Éxample")