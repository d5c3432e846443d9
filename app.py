from dotenv import load_dotenv

from certanchor import create_app
from certanchor.config import Settings, configure_logging

# Load environment variables
load_dotenv()

settings = Settings.from_env(dotenv=False)
configure_logging(settings.log_level)

app = create_app(settings)

if __name__ == "__main__":
    app.run(host="0.0.0.0", port=settings.port)
