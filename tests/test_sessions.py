from sessions import issue_session_token, read_session_token


def test_token_round_trip() -> None:
    token = issue_session_token(42)
    assert read_session_token(token) == 42


def test_tampered_or_empty_token_is_rejected() -> None:
    token = issue_session_token(42)
    assert read_session_token(token[:-2] + "xx") is None
    assert read_session_token("") is None
    assert read_session_token("not-a-token") is None


def test_expired_token_is_rejected() -> None:
    token = issue_session_token(42)
    assert read_session_token(token, max_age_secs=-1) is None
