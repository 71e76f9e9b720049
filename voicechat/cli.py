from cyclopts import App
from dotenv import load_dotenv

from voicechat.serve.cli import serve_app
from voicechat.voice.cli import chat_app, history_app

app = App(name="voicechat", help="Voice chat widget relay and client")
app.command(serve_app, name="serve")
app.command(chat_app, name="chat")
app.command(history_app, name="history")

load_dotenv()


def main():
    app()


if __name__ == "__main__":
    main()
