import structlog

from kb_search.obs.observability import configure_logging, get_logger


def _wrapper_name() -> str:
    return structlog.get_config()["wrapper_class"].__name__


def test_explicit_level_overrides_the_import_time_default() -> None:
    get_logger("kb_search.tests")

    try:
        configure_logging("ERROR")
        assert _wrapper_name() == "BoundLoggerFilteringAtError"

        configure_logging()
        assert _wrapper_name() == "BoundLoggerFilteringAtError"
    finally:
        configure_logging("INFO")


def test_unknown_level_name_falls_back_to_info() -> None:
    try:
        configure_logging("chatty")
        assert _wrapper_name() == "BoundLoggerFilteringAtInfo"
    finally:
        configure_logging("INFO")
