conversations_sql = """
CREATE TABLE conversations (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    customer_id UUID NOT NULL REFERENCES auth.users(id) ON DELETE CASCADE,
    business_id UUID NOT NULL REFERENCES auth.users(id) ON DELETE CASCADE,
    last_message_at TIMESTAMPTZ,
    last_message_preview TEXT,
    customer_unread_count INTEGER NOT NULL DEFAULT 0 CHECK (customer_unread_count >= 0),
    business_unread_count INTEGER NOT NULL DEFAULT 0 CHECK (business_unread_count >= 0),
    created_at TIMESTAMPTZ DEFAULT now(),

    -- Exactly one conversation per customer/business pair
    CONSTRAINT unique_conversation_pair UNIQUE (customer_id, business_id),
    CONSTRAINT distinct_parties CHECK (customer_id <> business_id)
);
"""

messages_sql = """
CREATE TABLE messages (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    conversation_id UUID NOT NULL REFERENCES conversations(id) ON DELETE CASCADE,
    sender_id UUID NOT NULL REFERENCES auth.users(id) ON DELETE CASCADE,
    recipient_id UUID NOT NULL REFERENCES auth.users(id) ON DELETE CASCADE,
    body TEXT NOT NULL CHECK (length(btrim(body)) > 0),
    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    read_at TIMESTAMPTZ,

    CONSTRAINT distinct_sender_recipient CHECK (sender_id <> recipient_id)
);

CREATE INDEX messages_conversation_created_idx
    ON messages (conversation_id, created_at DESC);
"""

message_insert_trigger_sql = """
CREATE OR REPLACE FUNCTION public.on_message_inserted()
RETURNS trigger LANGUAGE plpgsql SECURITY DEFINER AS $$
BEGIN
    UPDATE conversations
    SET last_message_at = NEW.created_at,
        last_message_preview = left(NEW.body, 140),
        customer_unread_count = customer_unread_count
            + CASE WHEN NEW.recipient_id = customer_id THEN 1 ELSE 0 END,
        business_unread_count = business_unread_count
            + CASE WHEN NEW.recipient_id = business_id THEN 1 ELSE 0 END
    WHERE id = NEW.conversation_id;
    RETURN NEW;
END;
$$;

CREATE TRIGGER messages_after_insert
    AFTER INSERT ON messages
    FOR EACH ROW EXECUTE FUNCTION public.on_message_inserted();
"""

get_or_create_conversation_sql = """
CREATE OR REPLACE FUNCTION public.get_or_create_conversation(customer_id UUID, business_id UUID)
RETURNS UUID LANGUAGE plpgsql SECURITY DEFINER AS $$
DECLARE
    convo_id UUID;
BEGIN
    IF auth.uid() IS NULL
       OR auth.uid() NOT IN (get_or_create_conversation.customer_id, get_or_create_conversation.business_id) THEN
        RAISE EXCEPTION 'not a party to this conversation' USING ERRCODE = '42501';
    END IF;

    INSERT INTO conversations (customer_id, business_id)
    VALUES (get_or_create_conversation.customer_id, get_or_create_conversation.business_id)
    ON CONFLICT (customer_id, business_id) DO NOTHING
    RETURNING id INTO convo_id;

    IF convo_id IS NULL THEN
        SELECT c.id INTO convo_id
        FROM conversations c
        WHERE c.customer_id = get_or_create_conversation.customer_id
          AND c.business_id = get_or_create_conversation.business_id;
    END IF;

    RETURN convo_id;
END;
$$;
"""

mark_conversation_read_sql = """
CREATE OR REPLACE FUNCTION public.mark_conversation_read(conversation_id UUID)
RETURNS void LANGUAGE plpgsql SECURITY DEFINER AS $$
BEGIN
    UPDATE messages m
    SET read_at = now()
    WHERE m.conversation_id = mark_conversation_read.conversation_id
      AND m.recipient_id = auth.uid()
      AND m.read_at IS NULL;

    UPDATE conversations c
    SET customer_unread_count = CASE WHEN c.customer_id = auth.uid() THEN 0 ELSE c.customer_unread_count END,
        business_unread_count = CASE WHEN c.business_id = auth.uid() THEN 0 ELSE c.business_unread_count END
    WHERE c.id = mark_conversation_read.conversation_id;
END;
$$;
"""

unread_total_sql = """
CREATE OR REPLACE FUNCTION public.unread_total(role TEXT, account_id UUID)
RETURNS INTEGER LANGUAGE sql STABLE SECURITY DEFINER AS $$
    SELECT COALESCE(SUM(
        CASE WHEN unread_total.role = 'business' THEN business_unread_count
             ELSE customer_unread_count END
    ), 0)::INTEGER
    FROM conversations
    WHERE unread_total.account_id = auth.uid()
      AND ((unread_total.role = 'business' AND business_id = unread_total.account_id)
        OR (unread_total.role <> 'business' AND customer_id = unread_total.account_id));
$$;
"""

realtime_publication_sql = """
ALTER PUBLICATION supabase_realtime ADD TABLE messages;
"""

SCHEMA_STATEMENTS = [
    conversations_sql,
    messages_sql,
    message_insert_trigger_sql,
    get_or_create_conversation_sql,
    mark_conversation_read_sql,
    unread_total_sql,
    realtime_publication_sql,
]
