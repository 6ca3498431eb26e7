import tempfile
import unittest

from groupbridge.commands import GroupCommandService
from groupbridge.errors import (
    ConversationNotFound,
    InvalidRequest,
    NotAMember,
    NotRegistered,
    PartialUpdateError,
    UnreachableMembers,
    UpstreamError,
)
from groupbridge.events import GroupUpdated, NewGroup, NewMessage
from groupbridge.hub import SubscriptionHub
from groupbridge.identity import IdentityClientError
from groupbridge.memory import InMemoryNetwork
from groupbridge.models import GroupPatch, MembershipChange
from groupbridge.sessions import SessionStore

from tests.support import address_of, new_wallet, register


class GroupCommandTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.network = InMemoryNetwork()
        self.store = SessionStore(self.network.factory(), cache_root=self._tmp.name, env="dev")
        self.hub = SubscriptionHub()
        self.events = []
        self.hub.subscribe("recorder", self.events.append)
        self.service = GroupCommandService(self.store, self.hub, call_timeout=5.0)

        self.alice = new_wallet()
        self.bob = new_wallet()
        self.carol = new_wallet()
        self.alice_session = await register(self.store, self.alice)
        self.bob_inbox = self.network.enroll(self.bob.address)

    async def asyncTearDown(self):
        await self.store.close()
        self._tmp.cleanup()

    async def _create(self, **kwargs):
        return await self.service.create_group(self.alice.address, address_of(self.bob), **kwargs)

    async def _member_inboxes(self, group_id):
        views = await self.service.list_conversations(self.alice.address)
        view = next(view for view in views if view.id == group_id)
        return {member.inbox_id for member in view.members}

    async def test_commands_require_registration(self):
        dave = new_wallet()
        await self.store.open_session(dave.address)

        with self.assertRaises(NotRegistered):
            await self.service.create_group(dave.address, address_of(self.bob), name="Team")
        with self.assertRaises(NotRegistered):
            await self.service.send_message(dave.address, "missing", "hi")
        with self.assertRaises(NotRegistered):
            await self.service.list_conversations(address_of(new_wallet()))
        self.assertEqual(self.events, [])

    async def test_create_group_emits_new_group(self):
        view = await self._create(name="Team", description="Weekly sync", image_url="https://img")

        self.assertEqual(view.name, "Team")
        self.assertEqual(view.description, "Weekly sync")
        self.assertEqual(view.image_url, "https://img")
        self.assertEqual(view.added_by_inbox_id, self.alice_session.inbox_id)
        self.assertEqual(
            {member.inbox_id for member in view.members},
            {self.alice_session.inbox_id, self.bob_inbox},
        )
        self.assertEqual(len(self.events), 1)
        event = self.events[0]
        self.assertIsInstance(event, NewGroup)
        self.assertEqual(event.conversation_id, view.id)
        self.assertEqual(event.conversation["metadata"]["conversationType"], "default")

    async def test_create_group_with_unreachable_member(self):
        members = f"{address_of(self.bob)},{address_of(self.carol)}"

        with self.assertRaises(UnreachableMembers) as ctx:
            await self.service.create_group(self.alice.address, members, name="Team")

        self.assertEqual(ctx.exception.members, [address_of(self.carol)])
        self.assertEqual(self.events, [])
        self.assertEqual(await self.service.list_conversations(self.alice.address), [])

    async def test_create_group_requires_members(self):
        with self.assertRaises(InvalidRequest):
            await self.service.create_group(self.alice.address, " , ")

    async def test_send_right_after_create(self):
        view = await self._create(name="Team")

        message_id = await self.service.send_message(self.alice.address, view.id, "hello team")

        self.assertTrue(message_id)
        event = self.events[-1]
        self.assertIsInstance(event, NewMessage)
        self.assertEqual(event.payload(), {
            "groupId": view.id,
            "groupName": "Team",
            "sender": address_of(self.alice),
            "messageContent": "hello team",
        })

    async def test_send_to_unknown_group(self):
        with self.assertRaises(ConversationNotFound):
            await self.service.send_message(self.alice.address, "does-not-exist", "hi")
        self.assertEqual(self.events, [])

    async def test_add_then_remove_member_round_trip(self):
        view = await self._create(name="Team")
        self.network.enroll(self.carol.address)
        before = await self._member_inboxes(view.id)

        added = await self.service.update_group_members(
            self.alice.address, view.id, MembershipChange(add=[address_of(self.carol)])
        )
        during = await self._member_inboxes(view.id)
        removed = await self.service.update_group_members(
            self.alice.address, view.id, MembershipChange(remove=[address_of(self.carol)])
        )

        self.assertEqual(added, ["addMembers"])
        self.assertEqual(removed, ["removeMembers"])
        self.assertEqual(len(during), len(before) + 1)
        self.assertEqual(await self._member_inboxes(view.id), before)

    async def test_rotation_adds_before_removing(self):
        view = await self._create(name="Team")
        carol_inbox = self.network.enroll(self.carol.address)

        applied = await self.service.update_group_members(
            self.alice.address,
            view.id,
            MembershipChange(add=[address_of(self.carol)], remove=[address_of(self.bob)]),
        )

        self.assertEqual(applied, ["addMembers", "removeMembers"])
        self.assertEqual(await self._member_inboxes(view.id), {self.alice_session.inbox_id, carol_inbox})
        self.assertIsInstance(self.events[-1], GroupUpdated)

    async def test_update_metadata_applies_present_fields_only(self):
        view = await self._create(name="Team", description="Keep me")

        applied = await self.service.update_group_metadata(
            self.alice.address, view.id, GroupPatch(name="Renamed", image_url="https://new")
        )

        self.assertEqual(applied, ["name", "imageUrl"])
        [listed] = await self.service.list_conversations(self.alice.address)
        self.assertEqual(listed.name, "Renamed")
        self.assertEqual(listed.description, "Keep me")
        self.assertEqual(listed.image_url, "https://new")
        self.assertEqual(self.events[-1].changes, {"name": "Renamed", "imageUrl": "https://new"})

    async def test_update_metadata_partial_failure_keeps_earlier_fields(self):
        view = await self._create(name="Team")
        group = await self.alice_session.client.conversations.get_conversation_by_id(view.id)

        async def failing(_value):
            raise IdentityClientError("commit rejected")

        group.update_description = failing
        events_before = len(self.events)

        with self.assertRaises(PartialUpdateError) as ctx:
            await self.service.update_group_metadata(
                self.alice.address, view.id, GroupPatch(name="Renamed", description="x", image_url="y")
            )

        self.assertEqual(ctx.exception.applied, ["name"])
        self.assertEqual(self.network.group(view.id).name, "Renamed")
        self.assertEqual(self.network.group(view.id).image_url, "")
        self.assertEqual(len(self.events), events_before)

    async def test_first_step_failure_is_plain_upstream_error(self):
        view = await self._create(name="Team")

        with self.assertRaises(UpstreamError) as ctx:
            await self.service.update_group_members(
                self.alice.address, view.id, MembershipChange(add=[address_of(self.carol)])
            )
        self.assertNotIsInstance(ctx.exception, PartialUpdateError)

    async def test_update_metadata_unknown_group(self):
        with self.assertRaises(ConversationNotFound):
            await self.service.update_group_metadata(self.alice.address, "nope", GroupPatch(name="x"))

    async def test_admins_accept_addresses_and_inbox_ids(self):
        view = await self._create(name="Team")

        applied = await self.service.update_group_admins(
            self.alice.address, view.id, MembershipChange(add=[address_of(self.bob)])
        )
        [listed] = await self.service.list_conversations(self.alice.address)

        self.assertEqual(applied, [f"addAdmin:{self.bob_inbox}"])
        self.assertEqual(listed.admins, [self.bob_inbox])
        bob_member = next(member for member in listed.members if member.inbox_id == self.bob_inbox)
        self.assertEqual(bob_member.permission_level, "admin")

        await self.service.update_group_admins(self.alice.address, view.id, MembershipChange(remove=[self.bob_inbox]))
        [listed] = await self.service.list_conversations(self.alice.address)
        self.assertEqual(listed.admins, [])

    async def test_admin_change_for_non_member(self):
        view = await self._create(name="Team")
        carol_inbox = self.network.enroll(self.carol.address)
        events_before = len(self.events)

        with self.assertRaises(NotAMember) as ctx:
            await self.service.update_group_admins(
                self.alice.address, view.id, MembershipChange(add=[address_of(self.bob), carol_inbox])
            )

        self.assertEqual(ctx.exception.identifiers, [carol_inbox])
        self.assertEqual(self.network.group(view.id).admins, set())
        self.assertEqual(len(self.events), events_before)

    async def test_other_member_sees_group_only_after_sync(self):
        bob_store_session = await register(self.store, new_wallet())
        view = await self.service.create_group(self.alice.address, bob_store_session.address, name="Team")
        await self.service.send_message(self.alice.address, view.id, "first")

        with self.assertRaises(ConversationNotFound):
            await self.service.list_messages(bob_store_session.address, view.id)

        listed = await self.service.list_conversations(bob_store_session.address)
        self.assertEqual([item.id for item in listed], [view.id])
        self.assertEqual([message.content for message in listed[0].latest_messages], ["first"])

        await self.service.send_message(self.alice.address, view.id, "second")
        messages = await self.service.list_messages(bob_store_session.address, view.id)
        self.assertEqual([message.content for message in messages], ["first", "second"])
        self.assertEqual(messages[0].sender_address, address_of(self.alice))

    async def test_conversation_view_rendering(self):
        view = await self._create(name="Team")

        [listed] = await self.service.list_conversations(self.alice.address)
        body = listed.to_api_dict()

        self.assertEqual(body["id"], view.id)
        self.assertTrue(body["createdAt"].endswith("Z"))
        self.assertEqual(body["metadata"]["creatorInboxId"], self.alice_session.inbox_id)
        self.assertEqual(body["superAdmins"], [self.alice_session.inbox_id])
        self.assertTrue(body["isActive"])


if __name__ == "__main__":
    unittest.main()
