import io

from locust import HttpUser, task, between
from PIL import Image


def _jpeg_bytes(color):
    buf = io.BytesIO()
    Image.new("RGB", (64, 64), color=color).save(buf, format="JPEG")
    return buf.getvalue()


PROBLEM_JPEG = _jpeg_bytes((90, 140, 60))
SELFIE_JPEG = _jpeg_bytes((200, 170, 150))


class Scan4CareUser(HttpUser):
    # Simulates users waiting between 1 and 3 seconds between requests
    wait_time = between(1, 3)

    @task(5)
    def analyze(self):
        # Exercises storage, notification and inference end to end
        self.client.post(
            "/analyze",
            files={
                "image": ("problem.jpg", PROBLEM_JPEG, "image/jpeg"),
                "selfie": ("selfie.jpg", SELFIE_JPEG, "image/jpeg"),
            },
            data={"consent": "true", "location": "Load test", "prompt": "What is wrong with this leaf?"},
        )

    @task(1)
    def health(self):
        """Simulates uptime probes hitting the liveness route."""
        self.client.get("/")
