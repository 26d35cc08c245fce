"""Startup checks for the local tools and credentials the sessions need."""
from __future__ import annotations

import logging
import os
import shutil
from typing import List

from awsrat.config import Config
from awsrat.errors import PrerequisiteError


def ensure_plugin_on_path() -> None:
    """Append the Session Manager plugin's default install dir to PATH."""
    path = os.environ.get("PATH", "")
    if Config.SSM_PLUGIN_DIR not in path.split(os.pathsep):
        os.environ["PATH"] = os.pathsep.join(p for p in (path, Config.SSM_PLUGIN_DIR) if p)


def has_credentials() -> bool:
    if os.environ.get("AWS_ACCESS_KEY_ID") and os.environ.get("AWS_SECRET_ACCESS_KEY"):
        return True
    # SSO and role profiles live in ~/.aws/config only
    return Config.AWS_CRED_PATH.exists() or Config.AWS_CONFIG_PATH.exists()


def missing_prerequisites() -> List[str]:
    problems = []
    if shutil.which("aws") is None:
        problems.append("AWS CLI is not installed. Please install it and configure your credentials.")
    if shutil.which("session-manager-plugin") is None:
        problems.append("AWS SSM Session Manager Plugin is not installed. Please install it to continue.")
    if not has_credentials():
        problems.append(
            "AWS credentials are not properly set. Please configure them in ~/.aws/credentials "
            "or set the AWS_ACCESS_KEY_ID/AWS_SECRET_ACCESS_KEY environment variables.")
    return problems


def check_prerequisites() -> None:
    """Raise ``PrerequisiteError`` listing everything that is missing."""
    ensure_plugin_on_path()
    problems = missing_prerequisites()
    for problem in problems:
        logging.debug(f"Prerequisite missing: {problem}")
    if problems:
        raise PrerequisiteError("\n".join(problems))
