# bot.py
import asyncio
import logging
import os
from typing import Coroutine, List, Optional, Set

from aiogram import Bot, Dispatcher
from aiogram.filters import Command
from aiogram.types import Message

from coirc import Connection, Mode, Prefix, Scheduler, TickError

# --- Basic Configuration ---
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(levelname)s - %(message)s'
)

SERVER = os.environ.get("IRC_SERVER", "irc.libera.chat")
PORT = int(os.environ.get("IRC_PORT", "6667"))
NICKNAME = os.environ.get("IRC_NICK", "ezlivebot")
CHANNELS = [c.strip() for c in os.environ.get("IRC_CHANNELS", "#ezlive").split(",") if c.strip()]

TGTOKEN = os.environ.get("TG_TOKEN", "")
TGCHAT = int(os.environ.get("TG_CHAT", "0"))
TGTHREAD = int(os.environ.get("TG_THREAD", "0"))

TICK_INTERVAL = float(os.environ.get("TICK_INTERVAL", "0.1"))

# Keeps fire-and-forget Telegram sends alive until they finish.
_background: Set[asyncio.Task] = set()


def spawn(coro: Coroutine) -> asyncio.Task:
    task = asyncio.get_running_loop().create_task(coro)
    _background.add(task)
    task.add_done_callback(_background.discard)
    return task


# --- IRC Side ---

def setup_irc(irc: Connection, tgbot: Bot, channels: List[str], chat_id: int, thread_id: int):
    """Registers the relay hooks on an IRC connection."""

    @irc.on('OnConnect')
    def on_connect():
        """Called once the bot has successfully connected and registered."""
        logging.info("Successfully connected to the IRC server!")
        for channel in channels:
            logging.info(f"Joining {channel}...")
            irc.join(channel)

    @irc.on('OnChat')
    def on_message(actor: Prefix, target: Optional[str], text: Optional[str]):
        """Called on any channel or private message."""
        if actor.nick is None or text is None:
            return  # Ignore messages without a sender

        sender = actor.nick
        response_target = sender if target == irc.nick else target

        logging.info(f"[{target}] {sender}: {text}")
        if text.startswith('!ping'):
            irc.send_chat(response_target, "Pong!")
        msgbody = '<' + sender + '> ' + text
        spawn(tgbot.send_message(chat_id=chat_id, message_thread_id=thread_id, text=msgbody))

    @irc.on('OnDisconnect')
    def on_disconnect(message: Optional[str], forced: bool):
        if forced:
            logging.warning(f"Server closed the IRC link: {message}")
        else:
            logging.info(f"Left IRC: {message}")


async def pump(scheduler: Scheduler, interval: float = TICK_INTERVAL):
    """Drives the IRC scheduler until every connection has terminated."""
    while True:
        try:
            keep_going = scheduler.tick()
        except TickError as e:
            for fault in e.faults:
                logging.error(f"IRC connection {fault.connection.nick} lost: {fault}")
            keep_going = e.should_continue
        if not keep_going:
            logging.info("All IRC connections are closed.")
            return
        await asyncio.sleep(interval)


# --- Telegram Side ---

def get_sender(msg: Message) -> Optional[str]:
    if msg.from_user is None:
        return None
    user = msg.from_user
    if user.username is not None:
        return user.username
    if user.last_name is not None:
        return user.first_name + ' ' + user.last_name
    return user.first_name


def get_text(msg: Message) -> str:
    if msg.text is None:
        return ''
    return msg.text


def describe_chat(message: Message) -> str:
    res = ''
    res += 'chatid: ' + str(message.chat.id) + '\n'
    if message.message_thread_id is not None:
        res += 'message_thread_id: ' + str(message.message_thread_id) + '\n'
    if message.reply_to_message is not None:
        res += 'reply to msg id: ' + str(message.reply_to_message.message_id)
    return res


def relay_to_irc(irc: Connection, channels: List[str], msg: Message, chat_id: int, thread_id: int) -> bool:
    """Forwards a Telegram message from the bridged thread to every IRC channel."""
    if msg.chat.id != chat_id:
        return False
    if msg.message_thread_id is None:
        return False
    if msg.message_thread_id != thread_id:
        return False
    sender = get_sender(msg)
    if sender is None:
        return False
    if irc.mode is not Mode.FULL:
        logging.warning(f"Dropping message from {sender}: IRC is not connected.")
        return False

    msgbody = '<' + sender + '> ' + get_text(msg)
    for chan in channels:
        for line in msgbody.splitlines():
            irc.send_chat(chan, line)
    return True


def setup_telegram(dp: Dispatcher, irc: Connection, channels: List[str], chat_id: int, thread_id: int):
    """Registers the Telegram command and relay handlers."""

    @dp.message(Command("start"))
    async def command_start_handler(message: Message):
        await message.answer("Hello! I relay this thread to IRC.")

    @dp.message(Command("chatId"))
    async def command_chat_id_handler(message: Message):
        await message.answer(describe_chat(message))

    @dp.message()
    async def msg_handler(msg: Message):
        relay_to_irc(irc, channels, msg, chat_id, thread_id)


async def main():
    scheduler = Scheduler()
    irc = scheduler.create({
        'nick': NICKNAME,
        'realname': "My Awesome Relay Bot",
    })
    tgbot = Bot(token=TGTOKEN)
    dp = Dispatcher()

    setup_irc(irc, tgbot, CHANNELS, TGCHAT, TGTHREAD)
    setup_telegram(dp, irc, CHANNELS, TGCHAT, TGTHREAD)

    ok, err = irc.connect(SERVER, PORT)
    if not ok:
        logging.error(f"Giving up: {err}")
        return

    await asyncio.gather(pump(scheduler), dp.start_polling(tgbot))


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logging.info("Bot shutting down.")
