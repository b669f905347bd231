#!/usr/bin/env python


def pytest_configure(config):
    config.addinivalue_line(
        "markers", "slow: long-running training tests (deselect with '-m \"not slow\"')"
    )
