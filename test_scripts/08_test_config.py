#!/usr/bin/env python3
"""
Test: Configuration
Purpose: Verify settings defaults, environment overrides and startup validation
"""

import asyncio
import os
import sys

from fixtures import run_tests, assert_equal, assert_true, assert_raises

from backoffice.config.settings import Settings


async def test_defaults_are_valid():
    settings = Settings(_env_file=None)

    settings.validate_critical_config()
    assert_true(settings.database_url.startswith("sqlite+aiosqlite://"))
    assert_equal(settings.get_connection_args()["check_same_thread"], False)
    assert_true(settings.default_page_size <= settings.max_page_size)


async def test_environment_overrides():
    os.environ["OVERDUE_CHECK_INTERVAL_SECONDS"] = "15"
    try:
        settings = Settings(_env_file=None)
    finally:
        del os.environ["OVERDUE_CHECK_INTERVAL_SECONDS"]

    assert_equal(settings.overdue_check_interval_seconds, 15)


async def test_invalid_configuration_rejected():
    assert_raises(
        ValueError,
        Settings(_env_file=None, environment="production", debug=True).validate_critical_config,
    )
    assert_raises(
        ValueError,
        Settings(_env_file=None, overdue_check_interval_seconds=0).validate_critical_config,
    )
    assert_raises(
        ValueError,
        Settings(_env_file=None, database_url_sqlite="").validate_critical_config,
    )


async def main():
    return await run_tests("Configuration Tests", [
        ("Defaults are valid", test_defaults_are_valid),
        ("Environment overrides", test_environment_overrides),
        ("Invalid configuration rejected", test_invalid_configuration_rejected),
    ])


if __name__ == "__main__":
    exit_code = asyncio.run(main())
    sys.exit(exit_code)
