"""
Shared fakes for the XMTP client seam.
"""

import json
import asyncio

import pytest

from xmtpbridge.transport import MessagingClient, Conversation
from xmtpbridge.identity import wallet_address_from_private_key
from xmtpbridge.media import Attachment

# Well-known development key (anvil/hardhat account #0).
TEST_WALLET_KEY = "0xac0974bec39a17e36ba4a6b4d238ff944bacb478cbed5efcae784d7bf4f2ff80"
TEST_ADDRESS = "0xf39Fd6e51aad88F6F4ce6aB8827279cffFb92266"


class FakeConversation(Conversation):
    def __init__(self, conversation_id, fail=False):
        self.id = conversation_id
        self.sent = []
        self.fail = fail

    async def send_text(self, text):
        if self.fail:
            raise RuntimeError("network unreachable")
        self.sent.append(text)
        return f"msg-{len(self.sent)}"


class FakeClient(MessagingClient):
    def __init__(self, options=None, start_error=None, start_delay=0.0):
        self.options = options
        self.address = (
            wallet_address_from_private_key(options.wallet_key) if options else TEST_ADDRESS
        )
        self.start_error = start_error
        self.start_delay = start_delay
        self.started = False
        self.stopped = False
        self.handlers = {}
        self.conversations = {}
        self.dms = []
        self.remote_files = {}

    async def start(self):
        if self.start_delay:
            await asyncio.sleep(self.start_delay)
        if self.start_error:
            raise self.start_error
        self.started = True

    async def stop(self):
        self.stopped = True

    async def get_conversation(self, conversation_id):
        return self.conversations.get(conversation_id)

    async def create_dm(self, address):
        self.dms.append(address)
        conversation = FakeConversation(f"dm-{address.lower()}")
        self.conversations[conversation.id] = conversation
        return conversation

    async def download_attachment(self, remote):
        if remote.get('url') not in self.remote_files:
            raise RuntimeError(f"404 for {remote.get('url')}")
        return self.remote_files[remote['url']]

    def on_event(self, kind, handler):
        self.handlers[kind] = handler

    def add_conversation(self, conversation_id, fail=False):
        conversation = FakeConversation(conversation_id, fail=fail)
        self.conversations[conversation_id] = conversation
        return conversation

    def add_remote_file(self, url, content, mime_type="image/png", filename=None):
        self.remote_files[url] = Attachment(content=content, mime_type=mime_type, filename=filename)


class FakeFactory:
    """Client factory that records every client it builds."""

    def __init__(self, **client_kwargs):
        self.client_kwargs = client_kwargs
        self.clients = []

    async def __call__(self, options):
        client = FakeClient(options, **self.client_kwargs)
        self.clients.append(client)
        return client


def write_config(path, cfg):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(cfg))
    return path


@pytest.fixture
def state_dir(tmp_path):
    directory = tmp_path / "state"
    directory.mkdir()
    return directory


@pytest.fixture
def config_path(state_dir):
    return state_dir / "openclaw.json"


@pytest.fixture
def factory():
    return FakeFactory()
