"""RDM Agent — remote device management client.

Keeps a websocket connection to the control server, reports device
telemetry, and runs the shell commands the server dispatches.

Quickstart::

    from rdm_agent.agent import RemoteAgent
    from rdm_agent.config import AgentConfig

    agent = RemoteAgent(AgentConfig(server_url="wss://rdm.example.com/ws/device"))
    await agent.start()
"""

__version__ = "0.1.0"
