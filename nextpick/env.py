import os
from pathlib import Path


def load_optional_dotenv(path=None) -> None:
    """Load a local .env file only when LOAD_DOTENV is set.

    ``DOTENV_PATH`` overrides the default ``.env`` in the working directory.
    Variables already present in the environment win over the file.
    """
    flag = (os.getenv('LOAD_DOTENV') or '').strip().lower()
    if flag not in ('1', 'true', 'yes'):
        return
    env_path = Path(path or os.getenv('DOTENV_PATH') or '.env')
    if not env_path.is_file():
        return
    for line in env_path.read_text(encoding='utf-8').splitlines():
        line = line.strip()
        if line.startswith('export '):
            line = line[len('export '):].lstrip()
        if not line or line.startswith('#') or '=' not in line:
            continue
        key, value = line.split('=', 1)
        key = key.strip()
        if not key or key in os.environ:
            continue
        os.environ[key] = value.strip().strip('"').strip("'")
