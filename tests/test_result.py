from shopbot.services.result import Result


class TestResult:
    def test_success(self):
        result = Result.success("mid.1")
        assert result.ok is True
        assert result.value == "mid.1"
        assert result.error is None

    def test_failure(self):
        result = Result.failure("boom", code="send_failed")
        assert result.ok is False
        assert result.error == "boom"
        assert result.error_code == "send_failed"

    def test_from_exception(self):
        result = Result.from_exception(ValueError("bad"))
        assert result.ok is False
        assert result.error == "ValueError: bad"
        assert result.error_code == "exception"
