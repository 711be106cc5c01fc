import pytest


class RecordingNotifier:
    def __init__(self) -> None:
        self.sent = []

    def send_alert(self, user_id, message, kind) -> None:
        self.sent.append((user_id, message, kind))

    def of_kind(self, kind):
        return [entry for entry in self.sent if entry[2] == kind]


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()
