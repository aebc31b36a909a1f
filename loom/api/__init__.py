"""Runtime layer -- provider client, conversation loop, tools, sessions, REST."""
