import requests
import os
from dotenv import load_dotenv


def main():
    # load environment variables
    load_dotenv()

    service_url = os.environ["LLM_SERVICE_URL"].rstrip("/")

    response = requests.get(f"{service_url}/end-stale-sessions", timeout=30)
    response.raise_for_status()
    print(f"closed {response.json().get('closed', 0)} stale sessions")


if __name__ == "__main__":
    main()
