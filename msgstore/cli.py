# msgstore/cli.py
from __future__ import annotations
import argparse, json, shlex, sys
from typing import Any, List, Optional

from stablemem.buffer_pool import BufferPool
from .context import StoreConfig, StoreContext
from .errors import CorruptState
from .record import RecordPayload
from .service import CrudService, Result
from . import api

BANNER = (
    "欢迎使用 msgstore 客户端。\n"
    "输入 help 查看命令；输入 quit 或 exit 退出。\n"
)

HELP = (
    "命令：\n"
    "  get <id>\n"
    "  list\n"
    "  add <title> <body> <url>\n"
    "  update <id> <title> <body> <url>\n"
    "  delete <id>\n"
    "  stats                    -- 缓冲池统计\n"
    "  quit, exit               -- 退出\n"
)

PROMPT = "msgstore> "


def dump(obj: Any) -> str:
    return json.dumps(obj, ensure_ascii=False, indent=2)


def print_result(res: Result) -> int:
    if res.is_ok:
        print(dump({"Ok": res.value.to_dict()}))
        return 0
    print(dump({"Err": res.error.to_dict()}), file=sys.stderr)
    return 1


def run_command(svc: CrudService, argv: List[str]) -> int:
    """执行一条命令（子命令或交互 shell 中的一行），返回退出码。"""
    cmd, rest = argv[0], argv[1:]
    if cmd == "get" and len(rest) == 1:
        return print_result(api.get_message(svc, int(rest[0])))
    if cmd == "list" and not rest:
        resp = api.get_all_messages(svc)
        out = {
            "data": None if resp.data is None else [r.to_dict() for r in resp.data],
            "logs": resp.logs,
            "error": None if resp.error is None else resp.error.to_dict(),
        }
        print(dump(out))
        return 0 if resp.error is None else 1
    if cmd == "add" and len(rest) == 3:
        rec = api.add_message(svc, RecordPayload(*rest))
        if rec is None:
            print("null")
            return 1
        print(dump(rec.to_dict()))
        return 0
    if cmd == "update" and len(rest) == 4:
        return print_result(api.update_message(svc, int(rest[0]), RecordPayload(*rest[1:])))
    if cmd == "delete" and len(rest) == 1:
        return print_result(api.delete_message(svc, int(rest[0])))
    if cmd == "stats" and not rest:
        svc.ctx.manager.bp.report_stats()
        return 0
    print(f"未知命令或参数个数不对：{' '.join(argv)}", file=sys.stderr)
    return 2


def shell(svc: CrudService) -> int:
    print(BANNER)
    while True:
        try:
            line = input(PROMPT)
        except (EOFError, KeyboardInterrupt):
            print("\n再见")
            return 0
        line = line.strip()
        if not line:
            continue
        if line in ("quit", "exit", "\\q"):
            print("再见")
            return 0
        if line in ("help", "\\h", "\\?"):
            print(HELP)
            continue
        try:
            run_command(svc, shlex.split(line))
        except ValueError as e:
            print(f"错误 {type(e).__name__}: {e}")


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(prog="msgstore", description="持久化消息存储的命令行客户端")
    ap.add_argument("--db", default=None, help="数据文件路径（默认：$MSGSTORE_PATH 或 data/messages.msm）")
    ap.add_argument("--log", default=None, metavar="PATH", help="把日志写入文件（DEBUG 级别）")
    ap.add_argument("--stats", action="store_true", help="结束前打印缓冲池统计")
    sub = ap.add_subparsers(dest="cmd", required=True)

    p = sub.add_parser("get", help="按 id 读取一条消息")
    p.add_argument("id", type=int)
    sub.add_parser("list", help="按 id 升序列出全部消息")
    p = sub.add_parser("add", help="新增一条消息")
    p.add_argument("--title", required=True)
    p.add_argument("--body", required=True)
    p.add_argument("--url", default="", help="附件地址")
    p = sub.add_parser("update", help="更新一条消息")
    p.add_argument("id", type=int)
    p.add_argument("--title", required=True)
    p.add_argument("--body", required=True)
    p.add_argument("--url", default="", help="附件地址")
    p = sub.add_parser("delete", help="删除一条消息")
    p.add_argument("id", type=int)
    sub.add_parser("shell", help="交互模式")
    return ap


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    if args.log:
        import logging
        BufferPool.enable_global_log(args.log, level=logging.DEBUG)

    try:
        ctx = StoreContext.open(StoreConfig.from_env(args.db))
    except CorruptState as e:
        print(f"无法打开存储（文件已损坏）：{e}", file=sys.stderr)
        return 3

    with ctx:
        svc = CrudService(ctx)
        if args.cmd == "shell":
            code = shell(svc)
        elif args.cmd in ("add", "update"):
            argv2 = [args.cmd] + ([str(args.id)] if args.cmd == "update" else []) + [args.title, args.body, args.url]
            code = run_command(svc, argv2)
        elif args.cmd == "list":
            code = run_command(svc, ["list"])
        else:
            code = run_command(svc, [args.cmd, str(args.id)])
        if args.stats:
            ctx.manager.bp.report_stats()
    return code


if __name__ == "__main__":
    sys.exit(main())
