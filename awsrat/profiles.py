"""AWS profile and region selection."""
from __future__ import annotations

import configparser
import logging
import os
from typing import List, Optional, Tuple

from awsrat import ui
from awsrat.aws import AWSManager
from awsrat.config import Config
from awsrat.errors import SelectionCancelled


def list_profiles() -> List[str]:
    profiles = set()
    if Config.AWS_CONFIG_PATH.exists():
        cfg = configparser.RawConfigParser()
        cfg.read(Config.AWS_CONFIG_PATH)
        for sec in cfg.sections():
            if sec.startswith("profile "):
                profiles.add(sec.split(" ", 1)[1].strip())
            elif sec == 'default':
                profiles.add('default')
    if Config.AWS_CRED_PATH.exists():
        cred = configparser.RawConfigParser()
        cred.read(Config.AWS_CRED_PATH)
        profiles.update(cred.sections())
    return sorted(profiles)


def choose_profile() -> str:
    profiles = list_profiles()
    if not profiles:
        raise SelectionCancelled("profile", "no profiles in ~/.aws/config or ~/.aws/credentials")
    profile = ui.select_one(profiles, str, "Please select a profile", "profile")
    ui.success(f"You selected {profile}")
    ui.info(f"INFO: You can skip this step by running: export AWS_PROFILE={profile}")
    return profile


def choose_region(manager: AWSManager) -> str:
    regions = manager.list_regions()
    region = ui.select_one(regions, str, "Select a region", "region")
    ui.success(f"Selected region: {region}")
    ui.info(f"INFO: You can skip this step by running: export AWS_DEFAULT_REGION={region}")
    return region


def resolve_profile(flag: Optional[str]) -> Optional[str]:
    """Profile to use, ``None`` meaning the default credential chain."""
    if flag:
        return flag
    if os.environ.get("AWS_PROFILE"):
        logging.debug("Using AWS_PROFILE from the environment")
        return os.environ["AWS_PROFILE"]
    if os.environ.get("AWS_ACCESS_KEY_ID") and os.environ.get("AWS_SECRET_ACCESS_KEY"):
        ui.info("INFO: Using AWS access key and secret from environment variables.")
        if os.environ.get("AWS_SESSION_TOKEN"):
            ui.info("INFO: Using AWS session token from environment variables.")
        return None
    return choose_profile()


def resolve_region(flag: Optional[str], manager: AWSManager) -> str:
    if flag:
        return flag
    env_region = os.environ.get("AWS_DEFAULT_REGION") or os.environ.get("AWS_REGION")
    if env_region:
        return env_region
    return choose_region(manager)


def resolve(profile_flag: Optional[str] = None, region_flag: Optional[str] = None) -> Tuple[AWSManager, str]:
    """Settle profile and region, returning a manager bound to both."""
    profile = resolve_profile(profile_flag)
    manager = AWSManager(profile)
    region = resolve_region(region_flag, manager)
    return AWSManager(profile, region), region
