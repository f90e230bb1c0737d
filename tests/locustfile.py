from locust import HttpUser, task, between
import random
import string

USER_AGENTS = [
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
    "Mozilla/5.0 (iPhone; CPU iPhone OS 16_0 like Mac OS X) AppleWebKit/605.1.15 (KHTML, like Gecko) Version/16.0 Mobile/15E148 Safari/604.1",
]

class LinkAnalyticsUser(HttpUser):
    wait_time = between(1, 3)

    def on_start(self):
        """Выполняется при старте каждого пользователя"""
        self.links = []
        username = f"test_user_{random.randint(1000, 99999)}"
        self.client.post(
            "/users/",
            json={
                "username": username,
                "email": f"{username}@example.com",
                "password": "password123"
            }
        )

        response = self.client.post(
            "/token",
            data={
                "username": username,
                "password": "password123"
            },
            headers={"Content-Type": "application/x-www-form-urlencoded"}
        )

        if response.status_code == 200:
            self.token = response.json()["access_token"]
        else:
            self.token = None
            print(f"Failed to get token: {response.text}")

    @property
    def headers(self):
        return {"Authorization": f"Bearer {self.token}"}

    @task(3)
    def create_short_link(self):
        """Создание короткой ссылки"""
        if not self.token:
            return

        with self.client.post(
            "/links/shorten",
            json={
                "original_url": f"https://example.com/{self._random_string(10)}",
                "custom_alias": self._random_string(8),
                "tags": "load,test"
            },
            headers=self.headers,
            catch_response=True
        ) as response:
            if response.status_code == 201:
                response.success()
                data = response.json()
                self.links.append((data["id"], data["short_code"]))
            elif response.status_code == 409:
                response.success()
            else:
                response.failure(f"Failed to create short link: {response.text}")

    @task(10)
    def get_redirect(self):
        """Переход по короткой ссылке с разными адресами и браузерами"""
        if self.links:
            short_code = random.choice(self.links)[1]
        else:
            short_code = self._random_string(6)

        headers = {
            "User-Agent": random.choice(USER_AGENTS),
            "X-Forwarded-For": f"203.0.113.{random.randint(1, 254)}"
        }
        with self.client.get(
            f"/{short_code}",
            headers=headers,
            catch_response=True,
            allow_redirects=False,
            name="/[code]"
        ) as response:
            if response.status_code in (307, 404):
                response.success()
            else:
                response.failure(f"Unexpected status code: {response.status_code}")

    @task(2)
    def get_link_analytics(self):
        """Получение ссылки со сводкой аналитики"""
        if not self.token or not self.links:
            return

        link_id = random.choice(self.links)[0]
        with self.client.get(
            f"/links/{link_id}",
            headers=self.headers,
            catch_response=True,
            name="/links/[id]"
        ) as response:
            if response.status_code == 200:
                response.success()
            else:
                response.failure(f"Failed to get analytics: {response.text}")

    @task(1)
    def get_summary(self):
        if not self.token:
            return
        self.client.get("/links/summary", headers=self.headers)

    @task(1)
    def update_link(self):
        """Обновление ссылки"""
        if not self.token or not self.links:
            return

        link_id = random.choice(self.links)[0]
        with self.client.put(
            f"/links/{link_id}",
            json={"title": f"Title {self._random_string(5)}"},
            headers=self.headers,
            catch_response=True,
            name="/links/[id]"
        ) as response:
            if response.status_code == 200:
                response.success()
            else:
                response.failure(f"Failed to update link: {response.text}")

    def _random_string(self, length):
        """Генерация случайной строки"""
        letters = string.ascii_lowercase + string.digits
        return ''.join(random.choice(letters) for _ in range(length))
