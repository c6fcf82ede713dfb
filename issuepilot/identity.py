"""
IssuePilot identity: version, codename and banner.
"""

__version__ = "0.4.0"
__codename__ = "ISSUEPILOT"
__tagline__ = "Triage it. Ask once. Build it on a fresh box."

BANNER = r"""
  ___                      ____  _ _       _
 |_ _|___ ___ _   _  ___  |  _ \(_) | ___ | |_
  | |/ __/ __| | | |/ _ \ | |_) | | |/ _ \| __|
  | |\__ \__ \ |_| |  __/ |  __/| | | (_) | |_
 |___|___/___/\__,_|\___| |_|   |_|_|\___/ \__|
"""
