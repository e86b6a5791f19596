"""Command line surface for pilotchat: config, token discovery, login and chat."""
