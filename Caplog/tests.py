from __future__ import annotations

import base64
import json
import shutil
import tempfile
from io import StringIO
from pathlib import Path

from django.contrib.auth.models import Group, Permission, User
from django.core.management import call_command
from django.core.management.base import CommandError
from django.http import HttpResponse
from django.test import RequestFactory, SimpleTestCase, TestCase

from .audit import CapabilityAuditLog, operation
from .capabilities import CapabilityDiff, compare, diff, normalize
from .exceptions import EncodingError, MalformedRecord, NotFound, StoreUnavailable
from .middleware import CapabilityChangeLogMiddleware
from .operations import ChangeCoalescer, OperationContext, OperationState, get_current_operation
from .records import (
    MAX_FILENAME_BYTES,
    RecordContext,
    RecordMetadata,
    decode_body,
    decode_filename,
    encode,
    encode_filename,
)
from .roles import actor_from_user, current_role_model
from .settings import get_caplog_settings
from .signals import bulk_rewrite
from .store import RecordStore, sweep


def _model(**roles):
    return {role: {"name": role.title(), "capabilities": dict(caps)} for role, caps in roles.items()}


class CapabilityDiffTests(SimpleTestCase):
    def test_diff_reports_gained_and_lost_capabilities(self):
        before = _model(editor={"read": True, "edit": True})
        after = _model(editor={"read": True, "publish": True})
        result = compare(before, after)
        self.assertEqual(result.added, {"editor": ["publish"]})
        self.assertEqual(result.removed, {"editor": ["edit"]})

    def test_same_snapshot_has_no_diff(self):
        model = _model(editor={"read": True}, author={"write": True, "upload": False})
        self.assertTrue(compare(model, model).is_empty())

    def test_diff_is_symmetric(self):
        a = _model(editor={"read": True, "edit": True}, author={"write": True})
        b = _model(editor={"read": True, "publish": True}, viewer={"read": True})
        forward = compare(a, b)
        backward = compare(b, a)
        self.assertEqual(
            {role: set(caps) for role, caps in forward.added.items()},
            {role: set(caps) for role, caps in backward.removed.items()},
        )
        self.assertEqual(
            {role: set(caps) for role, caps in forward.removed.items()},
            {role: set(caps) for role, caps in backward.added.items()},
        )

    def test_falsy_capabilities_count_as_absent(self):
        before = _model(editor={"read": True, "edit": False})
        after = _model(editor={"read": True, "edit": 0})
        self.assertTrue(compare(before, after).is_empty())

    def test_missing_roles_are_treated_as_empty(self):
        result = compare(_model(editor={"read": True}), _model(author={"write": True}))
        self.assertEqual(result.removed, {"editor": ["read"]})
        self.assertEqual(result.added, {"author": ["write"]})

    def test_excluded_role_is_ignored(self):
        before = _model(administrator={"all": True}, editor={})
        after = _model(administrator={}, editor={"edit": True})
        result = compare(before, after, excluded_roles={"administrator"})
        self.assertEqual(result.added, {"editor": ["edit"]})
        self.assertEqual(result.removed, {})

    def test_normalize_is_idempotent_and_keeps_empty_roles(self):
        model = _model(editor={"read": True, "edit": False}, guest={"read": None})
        once = normalize(model)
        self.assertEqual(normalize(once), once)
        self.assertEqual(once["guest"], {"capabilities": {}})
        self.assertEqual(once["editor"], {"capabilities": {"read": True}})

    def test_malformed_roles_do_not_crash(self):
        before = {"editor": None, "author": {"capabilities": ["write"]}}
        after = _model(editor={"edit": True})
        result = compare(before, after)
        self.assertEqual(result.added, {"editor": ["edit"]})
        self.assertEqual(result.removed, {})
        self.assertEqual(normalize("not a model"), {})

    def test_order_follows_snapshot_iteration(self):
        after = normalize(_model(editor={"c": True, "a": True, "b": True}))
        result = diff(normalize({}), after)
        self.assertEqual(result.added, {"editor": ["c", "a", "b"]})
        self.assertEqual(result.rows(), [("added", "editor", "c"), ("added", "editor", "a"), ("added", "editor", "b")])


class RecordCodecTests(SimpleTestCase):
    def setUp(self):
        self.diff = CapabilityDiff(added={"editor": ["publish"]}, removed={"editor": ["edit"], "author": ["upload"]})
        self.context = RecordContext(
            actor_id=7,
            actor_label="alice",
            created_at=1700000000.25,
            referer="https://example.test/admin/auth/group/3/change/",
            extra={"m": "1700000000.250000"},
        )

    def test_body_layout(self):
        record = encode(self.diff, self.context)
        self.assertEqual(
            record.body,
            "User\talice (id=7)\n"
            "Referer\thttps://example.test/admin/auth/group/3/change/\n"
            "Is CLI\tNo\n"
            "Timestamp\t1700000000\n"
            "--\n"
            "added\teditor\tpublish\n"
            "removed\teditor\tedit\n"
            "removed\tauthor\tupload\n",
        )

    def test_filename_carries_metadata(self):
        record = encode(self.diff, self.context)
        self.assertTrue(record.filename.startswith("1700000000."))
        self.assertTrue(record.filename.endswith(".log"))
        self.assertNotIn("/", record.filename)
        self.assertEqual(decode_filename(record.filename), record.metadata)
        self.assertEqual(record.metadata.roles, ["editor", "author"])
        self.assertEqual(record.metadata.actions, ["added", "removed"])
        self.assertEqual(record.metadata.extra, {"m": "1700000000.250000"})

    def test_filename_payload_keys(self):
        name = encode_filename(RecordMetadata(created_at=5, actor_id=1, roles=["r"], actions=["added"]))
        payload = json.loads(base64.urlsafe_b64decode(name.split(".")[1]))
        self.assertEqual(payload, {"u": 1, "t": 5, "r": ["r"], "a": ["added"]})

    def test_configurable_header_fields(self):
        record = encode(self.diff, self.context, header_fields=("user", "microtime"))
        headers, rows = decode_body(record.body)
        self.assertEqual(headers, [("User", "alice (id=7)"), ("Microtime", "1700000000.250000")])
        self.assertEqual(rows, self.diff.rows())

    def test_decode_body_round_trip(self):
        headers, rows = decode_body(encode(self.diff, self.context).body)
        self.assertEqual(headers[0], ("User", "alice (id=7)"))
        self.assertEqual(headers[-1], ("Timestamp", "1700000000"))
        self.assertEqual(rows[0], ("added", "editor", "publish"))

    def test_referer_with_tabs_is_flattened(self):
        context = RecordContext(actor_id=1, actor_label="bob", created_at=1, referer="a\tb\nc")
        headers, _ = decode_body(encode(self.diff, context).body)
        self.assertIn(("Referer", "a b c"), headers)

    def test_decode_body_rejects_missing_separator(self):
        with self.assertRaises(MalformedRecord):
            decode_body("User\talice\nadded\teditor\tpublish\n")

    def test_decode_body_rejects_bad_header(self):
        with self.assertRaises(MalformedRecord):
            decode_body("User alice\n--\n")
        with self.assertRaises(MalformedRecord):
            decode_body("User\talice\textra\n--\n")

    def test_decode_filename_rejects_foreign_names(self):
        for name in ("notes.log", "123.log", "123.!!!.log", "abc.e30=.log", "123.e30=.txt"):
            with self.subTest(name=name), self.assertRaises(MalformedRecord):
                decode_filename(name)

    def test_unserializable_metadata(self):
        context = RecordContext(actor_id=object(), actor_label="x", created_at=1)
        with self.assertRaises(EncodingError):
            encode(self.diff, context)

    def test_many_roles_fit_in_one_filename(self):
        roles = [f"regional-editors-{n:02d}" for n in range(40)]
        diff = CapabilityDiff(added={role: ["auth.add_user"] for role in roles})
        record = encode(diff, self.context)
        self.assertLessEqual(len(record.filename), MAX_FILENAME_BYTES)
        kept = record.metadata.roles
        self.assertLess(len(kept), len(roles))
        self.assertEqual(kept, roles[: len(kept)])
        self.assertEqual(record.metadata.extra["rn"], 40)
        self.assertEqual(decode_filename(record.filename), record.metadata)
        _, rows = decode_body(record.body)
        self.assertEqual(len(rows), 40)

    def test_separator_must_match_exactly(self):
        with self.assertRaises(MalformedRecord):
            decode_body("User\talice\n  -- \nadded\teditor\tpublish\n")
        headers, rows = decode_body("User\talice\r\n--\r\nadded\teditor\tpublish\r\n")
        self.assertEqual(headers, [("User", "alice")])
        self.assertEqual(rows, [("added", "editor", "publish")])

    def test_tabs_in_role_names_are_flattened(self):
        diff = CapabilityDiff(added={"night\tshift": ["auth.add_user"]})
        _, rows = decode_body(encode(diff, self.context).body)
        self.assertEqual(rows, [("added", "night shift", "auth.add_user")])


class RecordStoreTests(SimpleTestCase):
    def setUp(self):
        self.tmp = tempfile.mkdtemp()
        self.addCleanup(shutil.rmtree, self.tmp, True)
        self.store = RecordStore(Path(self.tmp) / "caplog")

    def _write(self, created_at: int) -> str:
        name = encode_filename(RecordMetadata(created_at=created_at, actor_id=1, roles=["editor"], actions=["added"]))
        self.store.write(name, "User\tx\n--\n")
        return name

    def test_list_is_newest_first_by_name_timestamp(self):
        old = self._write(100)
        new = self._write(1000)
        middle = self._write(500)
        self.assertEqual(self.store.list(), [new, middle, old])

    def test_list_skips_foreign_files(self):
        name = self._write(100)
        (Path(self.tmp) / "caplog" / "readme.log").write_text("hi")
        with self.assertLogs("Caplog.store", "WARNING"):
            self.assertEqual(self.store.list(), [name])

    def test_list_of_missing_directory_is_empty(self):
        self.assertEqual(self.store.list(), [])

    def test_read_and_delete_missing_record(self):
        with self.assertRaises(NotFound):
            self.store.read("1.e30=.log")
        with self.assertRaises(NotFound):
            self.store.delete("1.e30=.log")
        with self.assertRaises(NotFound):
            self.store.read("../secrets.log")

    def test_unwritable_directory(self):
        blocker = Path(self.tmp) / "file"
        blocker.write_text("")
        with self.assertRaises(StoreUnavailable):
            RecordStore(blocker / "caplog").write("1.e30=.log", "")
        with self.assertRaises(StoreUnavailable):
            RecordStore("").write("1.e30=.log", "")

    def test_sweep_keeps_boundary_and_deletes_older(self):
        now = 2_000_000_000
        boundary = self._write(now - 10 * 86400)
        expired = self._write(now - 10 * 86400 - 1)
        fresh = self._write(now)
        deleted = sweep(self.store, 10, now=now)
        self.assertEqual(deleted, [expired])
        self.assertEqual(self.store.list(), [fresh, boundary])

    def test_sweep_survives_failed_delete(self):
        expired = self._write(1)
        store = self.store

        class FlakyStore:
            def list(self):
                return store.list()

            def delete(self, filename):
                raise PermissionError("read-only")

        with self.assertLogs("Caplog.store", "WARNING"):
            self.assertEqual(sweep(FlakyStore(), 1, now=2_000_000_000), [])
        self.assertEqual(self.store.list(), [expired])


class ChangeCoalescerTests(SimpleTestCase):
    def setUp(self):
        self.written = []

    def _recorder(self, diff, context):
        self.written.append(diff)
        return f"record-{len(self.written)}"

    def _fail(self):
        self.fail("snapshot should not have been taken")

    def test_many_notifications_one_write(self):
        coalescer = ChangeCoalescer(self._recorder)
        context = OperationContext()
        first = _model(editor={"read": True, "edit": True})
        coalescer.notify(context, first, after=_model(editor={"read": True}))
        coalescer.notify(context, self._fail, after=_model(editor={"read": True, "x": True}))
        coalescer.notify(context, self._fail, after=_model(editor={"read": True, "publish": True}))
        self.assertIs(context.state, OperationState.AWAITING_FINAL)
        self.assertEqual(coalescer.finish(context), "record-1")
        self.assertEqual(coalescer.finish(context), "record-1")
        self.assertEqual(len(self.written), 1)
        self.assertEqual(self.written[0].added, {"editor": ["publish"]})
        self.assertEqual(self.written[0].removed, {"editor": ["edit"]})

    def test_no_notification_writes_nothing(self):
        coalescer = ChangeCoalescer(self._recorder, snapshot_loader=self._fail)
        context = OperationContext()
        self.assertIsNone(coalescer.finish(context))
        self.assertEqual(self.written, [])

    def test_no_net_change_writes_nothing(self):
        model = _model(editor={"read": True})
        coalescer = ChangeCoalescer(self._recorder, snapshot_loader=lambda: model)
        context = OperationContext()
        coalescer.notify(context, model)
        self.assertIsNone(coalescer.finish(context))
        self.assertEqual(self.written, [])

    def test_flag_snapshot_wins_over_notifications(self):
        flag_time = _model(editor={"read": True, "edit": True})
        wiped = _model(editor={})
        final = _model(editor={"read": True, "publish": True})
        coalescer = ChangeCoalescer(self._recorder)
        context = OperationContext()
        coalescer.raise_bulk_rewrite(context, flag_time)
        self.assertTrue(context.is_bulk_rewrite_raised)
        coalescer.notify(context, wiped, after=wiped)
        coalescer.notify(context, self._fail, after=final)
        self.assertIs(context.before, flag_time)
        coalescer.commit_bulk_rewrite(context)
        self.assertEqual(self.written[0].added, {"editor": ["publish"]})
        self.assertEqual(self.written[0].removed, {"editor": ["edit"]})

    def test_bulk_commit_suppresses_terminal_commit(self):
        states = [_model(editor={"read": True}), _model(editor={"edit": True}), _model(editor={"other": True})]
        coalescer = ChangeCoalescer(self._recorder, snapshot_loader=lambda: states.pop(0))
        context = OperationContext()
        coalescer.raise_bulk_rewrite(context, _model(editor={}))
        coalescer.notify(context, self._fail)
        self.assertEqual(coalescer.commit_bulk_rewrite(context), "record-1")
        self.assertFalse(context.is_bulk_rewrite_raised)
        coalescer.notify(context, self._fail)
        self.assertEqual(coalescer.finish(context), "record-1")
        self.assertEqual(len(self.written), 1)
        self.assertEqual(self.written[0].added, {"editor": ["read"]})

    def test_terminal_signal_commits_when_bulk_rewrite_never_does(self):
        coalescer = ChangeCoalescer(self._recorder, snapshot_loader=lambda: _model(editor={"edit": True}))
        context = OperationContext()
        coalescer.raise_bulk_rewrite(context, _model(editor={"read": True}))
        coalescer.notify(context, self._fail)
        self.assertEqual(coalescer.finish(context), "record-1")
        self.assertEqual(self.written[0].removed, {"editor": ["read"]})

    def test_bulk_rewrite_without_change_is_discarded(self):
        model = _model(editor={"read": True})
        coalescer = ChangeCoalescer(self._recorder, snapshot_loader=lambda: model)
        context = OperationContext()
        coalescer.raise_bulk_rewrite(context, model)
        coalescer.notify(context, self._fail)
        self.assertIsNone(coalescer.commit_bulk_rewrite(context))
        self.assertIsNone(coalescer.finish(context))
        self.assertEqual(self.written, [])

    def test_failed_write_is_not_retried(self):
        def broken(diff, context):
            self.written.append(diff)
            raise StoreUnavailable("disk gone")

        coalescer = ChangeCoalescer(broken, snapshot_loader=lambda: _model(editor={"edit": True}))
        context = OperationContext()
        coalescer.notify(context, _model(editor={}))
        with self.assertRaises(StoreUnavailable):
            coalescer.finish(context)
        self.assertIsNone(coalescer.finish(context))
        self.assertEqual(len(self.written), 1)

    def test_excluded_roles_apply_at_commit(self):
        coalescer = ChangeCoalescer(
            self._recorder,
            snapshot_loader=lambda: _model(administrator={}, editor={"edit": True}),
            excluded_roles={"administrator"},
        )
        context = OperationContext()
        coalescer.notify(context, _model(administrator={"all": True}, editor={}))
        coalescer.finish(context)
        self.assertEqual(self.written[0].added, {"editor": ["edit"]})
        self.assertEqual(self.written[0].removed, {})

    def test_second_bulk_commit_does_not_write_again(self):
        states = [_model(editor={"read": True}), _model(editor={"read": True, "edit": True})]
        coalescer = ChangeCoalescer(self._recorder, snapshot_loader=lambda: states.pop(0))
        context = OperationContext()
        coalescer.raise_bulk_rewrite(context, _model(editor={}))
        coalescer.notify(context, self._fail)
        self.assertEqual(coalescer.commit_bulk_rewrite(context), "record-1")
        coalescer.raise_bulk_rewrite(context, self._fail)
        with self.assertLogs("Caplog.operations", "WARNING"):
            coalescer.notify(context, self._fail)
        self.assertEqual(coalescer.commit_bulk_rewrite(context), "record-1")
        self.assertEqual(coalescer.finish(context), "record-1")
        self.assertEqual(len(self.written), 1)
        self.assertEqual(len(states), 1)

    def test_empty_bulk_commit_leaves_operation_open(self):
        states = [_model(editor={"read": True}), _model(editor={"read": True, "edit": True})]
        coalescer = ChangeCoalescer(self._recorder, snapshot_loader=lambda: states.pop(0))
        context = OperationContext()
        coalescer.raise_bulk_rewrite(context, _model(editor={"read": True}))
        coalescer.notify(context, self._fail)
        self.assertIsNone(coalescer.commit_bulk_rewrite(context))
        self.assertIs(context.state, OperationState.AWAITING_FINAL)
        coalescer.notify(context, self._fail)
        self.assertEqual(coalescer.finish(context), "record-1")
        self.assertEqual(self.written[0].added, {"editor": ["edit"]})

    def test_empty_bulk_commit_without_notifications_keeps_flag_snapshot(self):
        flag_time = _model(editor={"read": True})
        states = [_model(editor={"read": True}), _model(editor={})]
        coalescer = ChangeCoalescer(self._recorder, snapshot_loader=lambda: states.pop(0))
        context = OperationContext()
        coalescer.raise_bulk_rewrite(context, flag_time)
        self.assertIsNone(coalescer.commit_bulk_rewrite(context))
        self.assertIs(context.state, OperationState.IDLE)
        coalescer.notify(context, self._fail)
        self.assertIs(context.before, flag_time)
        self.assertEqual(coalescer.finish(context), "record-1")
        self.assertEqual(self.written[0].removed, {"editor": ["read"]})


class CaplogDjangoTestCase(TestCase):
    def setUp(self):
        tmp = tempfile.mkdtemp()
        self.addCleanup(shutil.rmtree, tmp, True)
        override = self.settings(CAPLOG_LOG_DIR=tmp, CAPLOG_EXCLUDED_ROLES=())
        override.enable()
        self.addCleanup(override.disable)
        self.store = RecordStore(tmp)

        self.user = User.objects.create_user(username="alice")
        self.editors = Group.objects.create(name="editors")
        self.add_user = Permission.objects.get(codename="add_user")
        self.change_user = Permission.objects.get(codename="change_user")
        self.delete_user = Permission.objects.get(codename="delete_user")
        self.editors.permissions.add(self.add_user, self.change_user)

    def audit_log(self, **kwargs):
        return CapabilityAuditLog(get_caplog_settings(), **kwargs)

    def only_record(self):
        names = self.store.list()
        self.assertEqual(len(names), 1)
        return names[0]


class RoleModelTests(CaplogDjangoTestCase):
    def test_current_role_model(self):
        model = current_role_model()
        self.assertEqual(model["editors"], {"capabilities": {"auth.add_user": True, "auth.change_user": True}})

    def test_actor_from_user(self):
        actor = actor_from_user(self.user)
        self.assertEqual((actor.id, actor.display_name), (self.user.pk, "alice"))
        self.assertIsNone(actor_from_user(None))


class OperationTests(CaplogDjangoTestCase):
    def test_changes_in_one_operation_make_one_record(self):
        with operation(actor=actor_from_user(self.user), audit_log=self.audit_log()):
            self.editors.permissions.remove(self.change_user)
            self.editors.permissions.add(self.delete_user)
            self.editors.permissions.add(self.change_user)
            self.assertEqual(self.store.list(), [])
        headers, rows = decode_body(self.store.read(self.only_record()))
        self.assertEqual(rows, [("added", "editors", "auth.delete_user")])
        self.assertIn(("User", f"alice (id={self.user.pk})"), headers)
        self.assertIn(("Is CLI", "No"), headers)
        self.assertIsNone(get_current_operation())

    def test_changes_outside_an_operation_are_not_logged(self):
        self.editors.permissions.add(self.delete_user)
        self.assertEqual(self.store.list(), [])

    def test_reverting_within_an_operation_logs_nothing(self):
        with operation(audit_log=self.audit_log()):
            self.editors.permissions.clear()
            self.editors.permissions.add(self.add_user, self.change_user)
        self.assertEqual(self.store.list(), [])

    def test_nested_operation_joins_the_outer_one(self):
        with operation(is_cli=True, audit_log=self.audit_log()) as outer:
            with operation(audit_log=self.audit_log()) as inner:
                self.assertIs(inner, outer)
                self.editors.permissions.remove(self.add_user)
            self.assertEqual(self.store.list(), [])
        headers, rows = decode_body(self.store.read(self.only_record()))
        self.assertEqual(rows, [("removed", "editors", "auth.add_user")])
        self.assertIn(("Is CLI", "Yes"), headers)
        self.assertIn(("User", "anonymous (id=None)"), headers)

    def test_group_rename_and_delete(self):
        with operation(audit_log=self.audit_log()):
            self.editors.name = "writers"
            self.editors.save()
        _, rows = decode_body(self.store.read(self.only_record()))
        self.assertIn(("added", "writers", "auth.add_user"), rows)
        self.assertIn(("removed", "editors", "auth.add_user"), rows)

        with operation(audit_log=self.audit_log(clock=lambda: 4_000_000_000.0)):
            self.editors.delete()
        newest = self.store.list()[0]
        self.assertTrue(newest.startswith("4000000000."))
        self.assertEqual(decode_filename(newest).actions, ["removed"])

    def test_excluded_role_setting(self):
        admins = Group.objects.create(name="administrator")
        with self.settings(CAPLOG_EXCLUDED_ROLES=("administrator",)):
            with operation(audit_log=self.audit_log()):
                admins.permissions.add(self.delete_user)
        self.assertEqual(self.store.list(), [])

    def test_bulk_rewrite_records_at_its_own_commit(self):
        with operation(audit_log=self.audit_log()):
            with bulk_rewrite(sender=self.__class__):
                self.editors.permissions.clear()
                self.editors.permissions.add(self.add_user, self.delete_user)
            name = self.only_record()
        self.assertEqual(self.store.list(), [name])
        _, rows = decode_body(self.store.read(name))
        self.assertEqual(
            rows,
            [("added", "editors", "auth.delete_user"), ("removed", "editors", "auth.change_user")],
        )

    def test_failed_bulk_rewrite_falls_back_to_terminal_commit(self):
        with self.assertRaises(RuntimeError):
            with operation(audit_log=self.audit_log()):
                with bulk_rewrite():
                    self.editors.permissions.clear()
                    raise RuntimeError("rebuild failed")
        _, rows = decode_body(self.store.read(self.only_record()))
        self.assertEqual(
            rows,
            [("removed", "editors", "auth.add_user"), ("removed", "editors", "auth.change_user")],
        )

    def test_second_bulk_rewrite_does_not_write_a_second_record(self):
        with operation(audit_log=self.audit_log()):
            with bulk_rewrite():
                self.editors.permissions.clear()
                self.editors.permissions.add(self.add_user)
            with self.assertLogs("Caplog.operations", "WARNING"):
                with bulk_rewrite():
                    self.editors.permissions.clear()
                    self.editors.permissions.add(self.add_user, self.delete_user)
        _, rows = decode_body(self.store.read(self.only_record()))
        self.assertEqual(rows, [("removed", "editors", "auth.change_user")])

    def test_change_after_empty_bulk_rewrite_is_recorded(self):
        with operation(audit_log=self.audit_log()):
            with bulk_rewrite():
                self.editors.permissions.clear()
                self.editors.permissions.add(self.add_user, self.change_user)
            self.assertEqual(self.store.list(), [])
            self.editors.permissions.add(self.delete_user)
        _, rows = decode_body(self.store.read(self.only_record()))
        self.assertEqual(rows, [("added", "editors", "auth.delete_user")])

    def test_bulk_rewrite_of_many_groups(self):
        groups = [Group.objects.create(name=f"regional-editors-{n:02d}") for n in range(12)]
        with operation(audit_log=self.audit_log()):
            with bulk_rewrite():
                for group in groups:
                    group.permissions.add(self.add_user)
        name = self.only_record()
        self.assertLessEqual(len(name), MAX_FILENAME_BYTES)
        self.assertEqual(decode_filename(name).extra["rn"], 12)
        _, rows = decode_body(self.store.read(name))
        self.assertEqual(len(rows), 12)


class MiddlewareTests(CaplogDjangoTestCase):
    def request(self, path="/admin/auth/group/1/change/"):
        request = RequestFactory().post(path, HTTP_REFERER="https://example.test/admin/auth/group/")
        request.user = self.user
        return request

    def test_request_is_one_operation(self):
        def view(request):
            self.editors.permissions.remove(self.add_user)
            self.editors.permissions.add(self.delete_user)
            return HttpResponse("ok")

        response = CapabilityChangeLogMiddleware(view)(self.request())
        self.assertEqual(response.status_code, 200)
        meta = decode_filename(self.only_record())
        self.assertEqual(meta.actor_id, self.user.pk)
        self.assertEqual(meta.roles, ["editors"])
        self.assertEqual(meta.actions, ["added", "removed"])
        headers, _ = decode_body(self.store.read(self.only_record()))
        self.assertIn(("Referer", "https://example.test/admin/auth/group/"), headers)

    def test_skipped_paths(self):
        def view(request):
            self.editors.permissions.add(self.delete_user)
            return HttpResponse("ok")

        CapabilityChangeLogMiddleware(view)(self.request("/static/app.css"))
        self.assertEqual(self.store.list(), [])

    def test_write_failure_does_not_break_the_response(self):
        blocker = Path(self.store.directory) / "blocker"
        blocker.write_text("")

        def view(request):
            self.editors.permissions.add(self.delete_user)
            return HttpResponse("ok")

        with self.settings(CAPLOG_LOG_DIR=str(blocker / "caplog")):
            with self.assertLogs("Caplog.middleware", "ERROR"):
                response = CapabilityChangeLogMiddleware(view)(self.request())
        self.assertEqual(response.status_code, 200)


class ListingTests(CaplogDjangoTestCase):
    def make_record(self, clock, actor=None):
        with operation(actor=actor, audit_log=self.audit_log(clock=lambda: clock)):
            self.editors.permissions.add(self.delete_user)
            self.editors.permissions.remove(self.add_user)
        self.editors.permissions.add(self.add_user)
        self.editors.permissions.remove(self.delete_user)

    def test_list_summaries(self):
        self.make_record(1700000000.0, actor=actor_from_user(self.user))
        self.make_record(1700000100.0)
        (self.store.directory / "broken.log").write_text("")
        (self.store.directory / "1700000050.%%%.log").write_text("")

        summaries = self.audit_log(clock=lambda: 1700000200.0).list_summaries()
        self.assertEqual(len(summaries), 2)
        newest, oldest = summaries
        self.assertEqual(newest.actor_display_name, "unknown")
        self.assertEqual(oldest.actor_display_name, "alice")
        self.assertEqual(oldest.timestamp, "2023-11-14 22:13:20")
        self.assertEqual(oldest.roles_affected, "editors")
        self.assertTrue(oldest.added)
        self.assertTrue(oldest.removed)

    def test_listing_prunes_expired_records(self):
        self.make_record(1700000000.0)
        with self.settings(CAPLOG_MAX_AGE_DAYS=1):
            summaries = self.audit_log(clock=lambda: 1700000000.0 + 86401).list_summaries()
        self.assertEqual(summaries, [])
        self.assertEqual(self.store.list(), [])

    def test_renderable_single_record(self):
        self.make_record(1700000000.0, actor=actor_from_user(self.user))
        rendered = self.audit_log().renderable_single_record(self.only_record())
        self.assertEqual(
            rendered.header_fields,
            [
                ("User", f"alice (id={self.user.pk})"),
                ("Referer", ""),
                ("Is CLI", "No"),
                ("Timestamp", "2023-11-14 22:13:20"),
            ],
        )
        self.assertEqual(
            rendered.rows,
            [("added", "editors", "auth.delete_user"), ("removed", "editors", "auth.add_user")],
        )
        with self.assertRaises(NotFound):
            self.audit_log().renderable_single_record("1.e30=.log")

    def test_truncated_roles_are_counted(self):
        groups = [Group.objects.create(name=f"regional-editors-{n:02d}") for n in range(12)]
        with operation(audit_log=self.audit_log(clock=lambda: 1700000000.0)):
            for group in groups:
                group.permissions.add(self.add_user)
        (summary,) = self.audit_log(clock=lambda: 1700000000.0).list_summaries()
        self.assertTrue(summary.roles_affected.startswith("regional-editors-00, "))
        self.assertRegex(summary.roles_affected, r"\(\+\d+ more\)$")


class CommandTests(CaplogDjangoTestCase):
    def test_list_and_show(self):
        out = StringIO()
        call_command("caplog_list", stdout=out)
        self.assertIn("No log entries", out.getvalue())

        with operation(actor=actor_from_user(self.user)):
            self.editors.permissions.add(self.delete_user)
        name = self.only_record()

        out = StringIO()
        call_command("caplog_list", stdout=out)
        self.assertIn(name, out.getvalue())
        self.assertIn("alice", out.getvalue())

        out = StringIO()
        call_command("caplog_show", name, stdout=out)
        self.assertIn("added\tauth.delete_user\teditors", out.getvalue())

    def test_show_errors(self):
        with self.assertRaises(CommandError):
            call_command("caplog_show", "1.e30=.log", stdout=StringIO())
        Path(self.store.directory, "1.e30=.log").write_text("no separator\n")
        with self.assertRaises(CommandError):
            call_command("caplog_show", "1.e30=.log", stdout=StringIO())

    def test_prune(self):
        old = encode_filename(RecordMetadata(created_at=1, actor_id=None, roles=["editors"], actions=["added"]))
        self.store.write(old, "--\n")
        out = StringIO()
        call_command("caplog_prune", stdout=out)
        self.assertIn("Deleted 1", out.getvalue())
        self.assertEqual(self.store.list(), [])
