from jamroom.core.config import Settings


def test_defaults():
    config = Settings(_env_file=None)

    assert config.room_id_style == "numeric"
    assert config.room_capacity is None
    assert config.sync_audio_state is True
    assert config.ice_servers() == [{"urls": "stun:stun.l.google.com:19302"}]


def test_env_lists_and_blank_capacity(monkeypatch):
    monkeypatch.setenv("MIDI_INPUTS", "Keys 1, Pads ,")
    monkeypatch.setenv("ROOM_CAPACITY", "")
    monkeypatch.setenv("CORS_ALLOW_ORIGINS", "http://a.test,http://b.test")

    config = Settings(_env_file=None)

    assert config.midi_inputs == ["Keys 1", "Pads"]
    assert config.room_capacity is None
    assert config.cors_allow_origins == ["http://a.test", "http://b.test"]


def test_turn_server_requires_credentials():
    partial = Settings(_env_file=None, turn_server="relay.test:3478", turn_username="u")
    assert len(partial.ice_servers()) == 1

    full = Settings(_env_file=None, turn_server="relay.test:3478", turn_username="u", turn_password="p")
    assert full.ice_servers()[1] == {"urls": "turn:relay.test:3478", "username": "u", "credential": "p"}
